import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from bs4 import BeautifulSoup
from playwright.async_api import Error as PWError

from backend.py_models.listing import (
    DiscoveryFilters,
    ListingCandidate,
    MatchLabel,
    PropertyMode,
    VerifiedListing,
)
from backend.zillow.config import NAV_TIMEOUT_MS
from backend.zillow.errors import (
    BlockedError,
    ContextDestroyed,
    NavigationFailed,
    PhaseResult,
    classify_error,
    is_context_destroyed,
    looks_blocked,
)
from backend.zillow.browser import human_pause

log = logging.getLogger("zillow")

# Ordered: the most specific phrase decides the label
OWNER_PHRASES = (
    ("listed by property owner", MatchLabel.PROPERTY_OWNER),
    ("for rent by owner", MatchLabel.FRBO),
    ("for sale by owner", MatchLabel.FSBO),
)
_NAME_CAPTURE = r"\s*[:\-–]?[ \t]*([A-Za-z][A-Za-z.'\-]*(?:[ \t]+[A-Za-z][A-Za-z.'\-]*){0,4})"
# The attribution line names the owner; by-owner headings are only a fallback
_OWNER_NAME_RES = (
    re.compile(r"listed by property owner" + _NAME_CAPTURE, re.I),
    re.compile(r"for (?:rent|sale) by owner" + _NAME_CAPTURE, re.I),
)
_PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\b\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")
_PRICE_RE = re.compile(r"\$\s?\d[\d,]*(?:\.\d+)?(?:\s*/\s*mo)?", re.I)
_BEDS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:bds?|beds?|bedrooms?)\b", re.I)
_OFF_MARKET = re.compile(
    r"\b(?:off[- ]market|no longer (?:available|for rent|for sale)|recently (?:rented|leased|sold)|"
    r"this (?:home|property|rental|listing) (?:has been|was|is) (?:rented|leased|sold)|sold on \w+)",
    re.I,
)
# Name fragments that are page chrome rather than a person
_NAME_STOPWORDS = {
    "contact", "request", "message", "call", "email", "get", "ask", "see", "view", "property", "owner",
    "posted", "updated", "listed", "available", "for", "rent", "sale", "price", "home", "house", "apply",
}

_ADDRESS_SELECTORS = [
    "[data-testid='home-details-summary-headline']",
    "[data-testid='bdp-building-address']",
    "h1",
]
_PRICE_SELECTORS = ["[data-testid='price']", "[data-testid='on-market-price-details']", "span[data-testid*='price']"]
_OWNER_SELECTORS = [
    "[data-testid='attribution-PROPERTY_OWNER'] span",
    "[data-testid='attribution-LISTING_AGENT'] span",
    ".ds-listing-agent-display-name",
]
_PHONE_SELECTORS = ["[data-testid='attribution-PROPERTY_OWNER'] a[href^='tel:']", "a[href^='tel:']"]

BODY_TEXT_TIMEOUT_MS = 15000


class CandidateState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Verification:
    candidate: ListingCandidate
    state: CandidateState = CandidateState.PENDING
    listing: Optional[VerifiedListing] = None
    reason: Optional[str] = None
    attempts: int = 0

    def as_dict(self) -> dict:
        return {"url": self.candidate.url, "state": self.state.value, "reason": self.reason, "attempts": self.attempts}


# --- pure text classifiers ----------------------------------------------------

def classify_owner(text: str) -> MatchLabel:
    low = (text or "").lower()
    for phrase, label in OWNER_PHRASES:
        if phrase in low:
            return label
    return MatchLabel.NONE


def _name_from(captured: str) -> str:
    words = []
    for w in captured.split():
        if w.lower().strip(".") in _NAME_STOPWORDS:
            break
        words.append(w)
    name = " ".join(words).strip(" .-")
    return name if name[:1].isupper() else ""


def extract_owner_name(text: str) -> str:
    """Name after the ownership phrase; the attribution line wins over headings."""
    for pattern in _OWNER_NAME_RES:
        for m in pattern.finditer(text or ""):
            name = _name_from(m.group(1))
            if name:
                return name
    return ""


def extract_phone(text: str) -> str:
    m = _PHONE_RE.search(text or "")
    return m.group(0).strip() if m else ""


def detect_listing_type(text: str) -> Optional[PropertyMode]:
    low = (text or "").lower()
    rent, sale = "for rent" in low, "for sale" in low
    if rent and not sale:
        return PropertyMode.RENT
    if sale and not rent:
        return PropertyMode.SALE
    if rent and sale:
        return PropertyMode.RENT if low.index("for rent") < low.index("for sale") else PropertyMode.SALE
    return None


def looks_off_market(text: str) -> bool:
    return bool(_OFF_MARKET.search(text or ""))


@dataclass
class DetailRegions:
    address: Optional[str] = None
    price: Optional[str] = None
    owner_name: Optional[str] = None
    phone: Optional[str] = None
    beds: Optional[float] = None


def structural_regions(html: str) -> DetailRegions:
    soup = BeautifulSoup(html or "", "lxml")

    def first(selectors):
        for sel in selectors:
            el = soup.select_one(sel)
            if el is not None:
                txt = el.get_text(" ", strip=True)
                if txt:
                    return txt
        return None

    phone = None
    for sel in _PHONE_SELECTORS:
        el = soup.select_one(sel)
        if el is not None and el.get("href"):
            phone = el["href"].split(":", 1)[-1].strip() or None
            break
    return DetailRegions(
        address=first(_ADDRESS_SELECTORS),
        price=first(_PRICE_SELECTORS),
        owner_name=first(_OWNER_SELECTORS[:1]),
        phone=phone,
    )


def build_listing(
    cand: ListingCandidate,
    text: str,
    html: str,
    *,
    requested: PropertyMode,
) -> VerifiedListing:
    """Assemble a listing from candidate fields, structural regions, then full-text patterns."""
    regions = structural_regions(html)
    label = classify_owner(text)

    listing_type = cand.suspected_type
    if requested is PropertyMode.BOTH:
        listing_type = detect_listing_type(text) or listing_type
    if listing_type is None or listing_type is PropertyMode.BOTH:
        listing_type = PropertyMode.RENT if requested is not PropertyMode.SALE else PropertyMode.SALE

    price = cand.price or regions.price
    if not price:
        m = _PRICE_RE.search(text or "")
        price = m.group(0) if m else ""
    beds = cand.beds
    if beds is None:
        m = _BEDS_RE.search(text or "")
        beds = float(m.group(1)) if m else None

    owner_name = ""
    if label is not MatchLabel.NONE:
        owner_name = regions.owner_name or extract_owner_name(text)

    return VerifiedListing(
        address=cand.address or regions.address or "",
        price=price or "",
        owner_name=owner_name,
        phone=regions.phone or extract_phone(text),
        link=cand.url,
        property_type=listing_type,
        match_label=label,
        beds=beds,
        baths=cand.baths,
    )


# --- page driving -------------------------------------------------------------

async def _load_detail(page, url: str) -> tuple:
    """Navigate and read (body text, html). Context-destroyed faults surface as ContextDestroyed."""
    try:
        resp = await page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        await human_pause(page, 700, 1500)
        html = await page.content()
        text = await page.inner_text("body", timeout=BODY_TEXT_TIMEOUT_MS)
    except PWError as e:
        if is_context_destroyed(e):
            raise ContextDestroyed(str(e)) from e
        raise NavigationFailed(f"{url}: {e}") from e
    status = getattr(resp, "status", None) if resp is not None else None
    if looks_blocked(status, html):
        raise BlockedError(f"bot challenge on detail page {url} (status={status})")
    if status is not None and status >= 400:
        raise NavigationFailed(f"{url}: HTTP {status}")
    return text, html


async def verify_candidate(
    page,
    cand: ListingCandidate,
    *,
    requested: PropertyMode,
    filters: DiscoveryFilters,
) -> Verification:
    """
    pending → verified | skipped | failed. One retry on a context-destroyed
    fault; BlockedError propagates so the run can stop.
    """
    v = Verification(candidate=cand)
    text = html = None
    for attempt in range(2):
        v.attempts = attempt + 1
        try:
            text, html = await _load_detail(page, cand.url)
            break
        except ContextDestroyed as e:
            if attempt == 0:
                log.debug("VERIFY retry %s: %s", cand.url, e)
                continue
            v.state, v.reason = CandidateState.FAILED, "context-destroyed"
            return v
        except NavigationFailed as e:
            v.state, v.reason = CandidateState.FAILED, str(e)[:200]
            return v

    try:
        label = classify_owner(text)
        if filters.skip_no_agents and label is MatchLabel.NONE:
            v.state, v.reason = CandidateState.SKIPPED, "agent-listed"
            return v
        if filters.skip_already_rented and looks_off_market(text):
            v.state, v.reason = CandidateState.SKIPPED, "off-market"
            return v
        v.listing = build_listing(cand, text, html, requested=requested)
        v.state = CandidateState.VERIFIED
    except (ValueError, TypeError) as e:
        v.state, v.reason = CandidateState.FAILED, f"evaluation: {e}"[:200]
    return v


async def verify_candidates(
    page,
    candidates: Sequence[ListingCandidate],
    *,
    requested: PropertyMode,
    filters: DiscoveryFilters,
    sink: Optional[List[VerifiedListing]] = None,
) -> PhaseResult[List[Verification]]:
    """
    Visit candidates one at a time on the run's single page. Verified
    listings are appended to `sink` as they land so a budget cut keeps them.
    """
    results: List[Verification] = []
    sink = sink if sink is not None else []
    for cand in candidates:
        try:
            v = await verify_candidate(page, cand, requested=requested, filters=filters)
        except BlockedError as e:
            log.warning("VERIFY ✘ blocked at %s; stopping", cand.url)
            return PhaseResult(
                value=results,
                error=classify_error(e, "verify"),
                diagnostics=_verify_diagnostics(results),
            )
        except Exception as e:
            v = Verification(candidate=cand, state=CandidateState.FAILED, reason=f"{type(e).__name__}: {e}"[:200])
        results.append(v)
        if v.listing is not None:
            sink.append(v.listing)
            log.info("VERIFY ✔ %s label=%s", cand.url, v.listing.match_label.value)
        else:
            log.info("VERIFY ✘ %s %s (%s)", cand.url, v.state.value, v.reason)
        await human_pause(page, 400, 1200)
    return PhaseResult(value=results, diagnostics=_verify_diagnostics(results))


def _verify_diagnostics(results: List[Verification]) -> dict:
    counts = {s.value: 0 for s in CandidateState if s is not CandidateState.PENDING}
    for v in results:
        counts[v.state.value] = counts.get(v.state.value, 0) + 1
    return {"counts": counts, "candidates": [v.as_dict() for v in results[:50]]}
