"""
Schema-agnostic helpers for finding listing records inside versioned JSON.

The target site reshuffles its page state between releases, so nothing
here depends on a fixed path: a bounded tree walk looks for arrays whose
elements *look like* listings, and a permissive regex scan picks up any
detail-page URL the walk could not reach.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional
from urllib.parse import urljoin, urlparse, urlunparse

from backend.py_models.listing import ListingCandidate, PropertyMode
from backend.zillow.config import BASE_URL

MAX_DEPTH = 7
MAX_BREADTH = 120

_DETAIL_PATH = re.compile(r"^/homedetails/(?:[^/]+/)?\d+_zpid/?$", re.I)
_BUILDING_PATH = re.compile(r"^/(?:b/[^/]+(?:/[^/]+)?|apartments/[^/]+/[^/]+/[^/]+)/?$", re.I)
DETAIL_URL_RE = re.compile(
    r"(?:https?://(?:www\.)?zillow\.com)?/homedetails/(?:[^\s\"'<>?#\\/]+/)?\d+_zpid/?",
    re.I,
)
_URL_KEY = re.compile(r"detailurl|hdpurl|url", re.I)


def canonical_url(url: str, base: str = BASE_URL) -> str:
    """Absolute URL with query and fragment removed; path kept as-is."""
    p = urlparse(urljoin(base + "/", (url or "").strip()))
    return urlunparse((p.scheme or "https", p.netloc.lower(), p.path, "", "", ""))


def is_detail_url(url: str) -> bool:
    p = urlparse(url or "")
    if p.netloc and not p.netloc.lower().endswith("zillow.com"):
        return False
    return bool(_DETAIL_PATH.match(p.path) or _BUILDING_PATH.match(p.path))


def scan_detail_urls(text: str) -> List[str]:
    """Every detail-URL-shaped string in a blob, canonicalized, first-seen order."""
    if not text:
        return []
    t = text.replace("\\/", "/").replace("\\u002F", "/")
    seen = set()
    out = []
    for m in DETAIL_URL_RE.finditer(t):
        u = canonical_url(m.group(0))
        if u not in seen:
            seen.add(u)
            out.append(u)
    return out


def parse_json_text(text: str) -> Any:
    """Parse a JSON body, tolerating anti-hijacking prefixes. None if it isn't JSON."""
    if not text:
        return None
    t = text.strip()
    low = t[:200].lower()
    if "<html" in low or "<!doctype" in low:
        return None
    for prefix in ("for(;;);", ")]}',", ")]}'", "while(1);"):
        if t.startswith(prefix):
            t = t[len(prefix):].lstrip()
    try:
        return json.loads(t)
    except ValueError:
        return None


def looks_like_listing(record: Any) -> bool:
    if not isinstance(record, dict):
        return False
    if "zpid" in record:
        return True
    return any(_URL_KEY.search(str(k)) for k in record)


@dataclass
class RecordHit:
    path: str
    items: List[Any]

    def sample(self) -> List[str]:
        first = self.items[0] if self.items else {}
        return sorted(first.keys())[:12] if isinstance(first, dict) else []


def find_record_arrays(
    doc: Any,
    predicate: Callable[[Any], bool] = looks_like_listing,
    *,
    max_depth: int = MAX_DEPTH,
    max_breadth: int = MAX_BREADTH,
) -> List[RecordHit]:
    """
    Depth/breadth-bounded walk returning every array whose first element
    satisfies `predicate`, tagged with its dotted path.
    """
    hits: List[RecordHit] = []

    def walk(node: Any, path: str, depth: int) -> None:
        if depth > max_depth:
            return
        if isinstance(node, list):
            if node and predicate(node[0]):
                hits.append(RecordHit(path=path, items=node))
                return
            for i, it in enumerate(node[:max_breadth]):
                if isinstance(it, (dict, list)):
                    walk(it, f"{path}[{i}]", depth + 1)
            return
        if isinstance(node, dict):
            for i, (k, v) in enumerate(node.items()):
                if i >= max_breadth:
                    break
                if isinstance(v, (dict, list)):
                    walk(v, f"{path}.{k}" if path else str(k), depth + 1)

    walk(doc, "", 0)
    return hits


# --- record → candidate -----------------------------------------------------

def _coerce_float(x) -> Optional[float]:
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, (int, float)):
        return float(x)
    s = re.sub(r"[^0-9.]", "", str(x))
    try:
        return float(s) if s else None
    except ValueError:
        return None


def price_text(v) -> Optional[str]:
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        return None
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v).strip()


def _address_text(rec: dict, home: dict) -> Optional[str]:
    a = rec.get("address")
    if isinstance(a, str) and a.strip():
        return a.strip()
    if isinstance(a, dict):
        parts = [a.get("streetAddress"), a.get("city"), a.get("state"), a.get("zipcode")]
        joined = ", ".join(str(p) for p in parts if p)
        if joined:
            return joined
    for v in (home.get("streetAddress"), rec.get("addressStreet"), rec.get("streetAddress")):
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def _owner_badge(rec: dict, home: dict) -> bool:
    if rec.get("isFrbo") or rec.get("isFsbo"):
        return True
    sub = home.get("listing_sub_type")
    if isinstance(sub, dict) and (sub.get("is_FSBO") or sub.get("is_forRentByOwner")):
        return True
    badges = rec.get("badges")
    if isinstance(badges, list) and "owner" in " ".join(str(b) for b in badges).lower():
        return True
    provider = rec.get("listingProviderType")
    return bool(provider) and "owner" in str(provider).lower()


def candidate_from_record(
    rec: Any,
    *,
    suspected_type: Optional[PropertyMode] = None,
    source: Optional[str] = None,
) -> Optional[ListingCandidate]:
    """Map one listing-ish record to a candidate; None when it has no detail URL."""
    if not isinstance(rec, dict):
        return None
    hdp = rec.get("hdpData")
    home = hdp.get("homeInfo") if isinstance(hdp, dict) else None
    home = home if isinstance(home, dict) else {}

    zpid = rec.get("zpid") or home.get("zpid")
    zpid = str(zpid) if zpid not in (None, "") else None
    href = rec.get("detailUrl") or rec.get("hdpUrl") or rec.get("url")
    url = canonical_url(href) if isinstance(href, str) and href.strip() else None
    if not url or not is_detail_url(url):
        if not zpid or not zpid.isdigit():
            return None
        url = canonical_url(f"/homedetails/{zpid}_zpid/")

    lat_long = rec.get("latLong") if isinstance(rec.get("latLong"), dict) else {}
    price = rec.get("unformattedPrice")
    if price is None:
        price = rec.get("price")
    if price is None:
        price = home.get("price")
    beds = rec.get("beds") if rec.get("beds") is not None else home.get("bedrooms")
    baths = rec.get("baths") if rec.get("baths") is not None else home.get("bathrooms")

    return ListingCandidate(
        url=url,
        zpid=zpid,
        address=_address_text(rec, home),
        price=price_text(price),
        beds=_coerce_float(beds),
        baths=_coerce_float(baths),
        lat=_coerce_float(lat_long.get("latitude", home.get("latitude"))),
        lng=_coerce_float(lat_long.get("longitude", home.get("longitude"))),
        badge_owner=_owner_badge(rec, home),
        suspected_type=suspected_type,
        source=source,
    )


@dataclass
class Extraction:
    candidates: List[ListingCandidate] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    raw_hits: int = 0
    filtered: int = 0


def extract_candidates(
    doc: Any,
    raw_text: str = "",
    *,
    suspected_type: Optional[PropertyMode] = None,
    source: Optional[str] = None,
) -> Extraction:
    """Walk a document for listing arrays, then sweep its text for stray detail URLs."""
    out = Extraction()
    for hit in find_record_arrays(doc):
        out.paths.append(hit.path)
        for item in hit.items:
            out.raw_hits += 1
            cand = candidate_from_record(item, suspected_type=suspected_type, source=source)
            if cand is None:
                out.filtered += 1
                continue
            out.candidates.append(cand)

    text = raw_text or (json.dumps(doc) if doc is not None else "")
    known = {c.url for c in out.candidates}
    for u in scan_detail_urls(text):
        if u in known:
            continue
        known.add(u)
        out.candidates.append(ListingCandidate(url=u, suspected_type=suspected_type, source=source))
    return out


def dedupe_candidates(cands: Iterable[ListingCandidate], cap: Optional[int] = None) -> List[ListingCandidate]:
    """Collapse by canonical URL, filling gaps in the first copy from later ones."""
    by_url: dict = {}
    for c in cands:
        key = canonical_url(c.url)
        prev = by_url.get(key)
        if prev is None:
            by_url[key] = c if c.url == key else c.model_copy(update={"url": key})
            continue
        fill = {
            k: v
            for k, v in c.model_dump(exclude={"url"}).items()
            if getattr(prev, k) in (None, False) and v not in (None, False)
        }
        if fill:
            by_url[key] = prev.model_copy(update=fill)
    out = list(by_url.values())
    return out[:cap] if cap is not None else out
