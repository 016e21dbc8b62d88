import re
from typing import Iterable, List, Optional

from backend.py_models.listing import (
    DiscoveryFilters,
    DiscoveryResult,
    DiscoveryWarning,
    VerifiedListing,
)


def price_number(price: Optional[str]) -> Optional[int]:
    """Digits-only reading of a price string; None when there are no digits."""
    digits = re.sub(r"\D", "", price or "")
    return int(digits) if digits else None


def composite_key(listing: VerifiedListing) -> str:
    raw = f"{listing.link}|{listing.address}|{listing.price}".lower()
    return " ".join(raw.split())


def passes_filters(listing: VerifiedListing, filters: DiscoveryFilters) -> bool:
    if filters.max_price and filters.max_price > 0:
        n = price_number(listing.price)
        if n is not None and n > filters.max_price:
            return False
    if filters.min_bedrooms and listing.beds is not None and listing.beds < filters.min_bedrooms:
        return False
    return True


def dedupe_listings(listings: Iterable[VerifiedListing], *, by_composite: bool) -> List[VerifiedListing]:
    seen_links = set()
    seen_keys = set()
    out = []
    for l in listings:
        if l.link in seen_links:
            continue
        if by_composite:
            key = composite_key(l)
            if key in seen_keys:
                continue
            seen_keys.add(key)
        seen_links.add(l.link)
        out.append(l)
    return out


def assemble(
    verified: Iterable[VerifiedListing],
    filters: DiscoveryFilters,
    *,
    empty_warning: DiscoveryWarning = DiscoveryWarning.OWNER_CARDS_EMPTY,
    duration_ms: int = 0,
    diagnostics: Optional[dict] = None,
) -> DiscoveryResult:
    """Final filters and dedup; a warning is set exactly when nothing survives."""
    verified = list(verified)
    kept = [l for l in verified if passes_filters(l, filters)]
    listings = dedupe_listings(kept, by_composite=filters.skip_duplicate_photos)
    diag = dict(diagnostics or {})
    diag["assembled"] = {"verified": len(verified), "afterFilters": len(kept), "returned": len(listings)}
    return DiscoveryResult(
        listings=listings,
        warning=None if listings else empty_warning,
        duration_ms=duration_ms,
        diagnostics=diag,
    )
