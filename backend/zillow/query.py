import json
from typing import List, Optional
from urllib.parse import parse_qs, quote_plus, urlencode, urlparse

from backend.py_models.listing import PropertyMode
from backend.zillow.config import BASE_URL


def _slug(s: str) -> str:
    """Convert 'Austin, TX' → 'austin-tx', '78701' → '78701'."""
    s = (s or "").replace(",", " ")
    return "-".join(s.strip().lower().split())


def _mode(property_type) -> PropertyMode:
    return property_type if isinstance(property_type, PropertyMode) else PropertyMode(str(property_type).lower())


def _mode_queries(mode: PropertyMode, city_or_zip: str) -> List[str]:
    q = city_or_zip.strip()
    slug = _slug(q)
    if mode is PropertyMode.RENT:
        return [
            f'site:zillow.com "for rent by owner" "{q}"',
            f"site:zillow.com frbo {q}",
            f"site:zillow.com/{slug}/rentals/ by owner",
        ]
    return [
        f'site:zillow.com "for sale by owner" "{q}"',
        f"site:zillow.com fsbo {q}",
        f"site:zillow.com/{slug}/fsbo/",
    ]


def build_queries(property_type, city_or_zip: str) -> List[str]:
    """
    Ranked search-engine queries for a (mode, city/zip), most specific first.
    'both' is the rent set, then the sale set, then one path-scoped query
    that names no mode.
    """
    mode = _mode(property_type)
    if mode is PropertyMode.BOTH:
        return (
            _mode_queries(PropertyMode.RENT, city_or_zip)
            + _mode_queries(PropertyMode.SALE, city_or_zip)
            + [f"site:zillow.com/{_slug(city_or_zip)}/ owner"]
        )
    return _mode_queries(mode, city_or_zip)


# Category paths tried when no search engine hit qualifies
_DIRECT_TEMPLATES = {
    PropertyMode.RENT: ("{base}/{slug}/rent-houses/", "{base}/{slug}/rentals/"),
    PropertyMode.SALE: ("{base}/{slug}/fsbo/", "{base}/{slug}/"),
    PropertyMode.BOTH: ("{base}/{slug}/rentals/", "{base}/{slug}/fsbo/"),
}


def build_direct_urls(property_type, city_or_zip: str) -> List[str]:
    mode = _mode(property_type)
    slug = _slug(city_or_zip)
    return [t.format(base=BASE_URL, slug=slug) for t in _DIRECT_TEMPLATES[mode]]


def build_direct_url(property_type, city_or_zip: str) -> str:
    return build_direct_urls(property_type, city_or_zip)[0]


def html_search_url(query: str) -> str:
    return f"https://html.duckduckgo.com/html/?q={quote_plus(query)}"


def interactive_search_url(query: str) -> str:
    return f"https://duckduckgo.com/?q={quote_plus(query)}&ia=web"


# --- search API ---------------------------------------------------------------

SEARCH_API_URL = f"{BASE_URL}/search/GetSearchPageState.htm"
SEARCH_API_WANTS = {"cat1": ["listResults", "mapResults"], "cat2": ["total"]}

# Listing kinds excluded from a rentals-only search
_NON_RENTAL_FILTERS = ("fsba", "fsbo", "nc", "cmsn", "auc", "fore", "tow", "mf", "con", "land", "apa", "manu", "apco")


def search_state_from_url(url: str) -> Optional[dict]:
    """The decoded `searchQueryState` of a search-results URL, if it carries one."""
    try:
        raw = parse_qs(urlparse(url or "").query).get("searchQueryState")
        state = json.loads(raw[0]) if raw else None
    except ValueError:
        return None
    return state if isinstance(state, dict) else None


def base_search_state(property_type, city_or_zip: str) -> dict:
    """Search state scoped by search term, for when no results URL supplied one."""
    mode = _mode(property_type)
    filters: dict = {"sort": {"value": "priorityscore"}}
    if mode is PropertyMode.RENT:
        filters["fr"] = {"value": True}
        filters.update({k: {"value": False} for k in _NON_RENTAL_FILTERS})
    elif mode is PropertyMode.SALE:
        filters["fsbo"] = {"value": True}
    return {
        "pagination": {"currentPage": 1},
        "usersSearchTerm": city_or_zip.strip(),
        "isMapVisible": False,
        "isListVisible": True,
        "filterState": filters,
    }


def search_api_url(state: dict, page_num: int) -> str:
    paged = dict(state, pagination={"currentPage": page_num})
    params = {
        "searchQueryState": json.dumps(paged, separators=(",", ":")),
        "wants": json.dumps(SEARCH_API_WANTS, separators=(",", ":")),
        "requestId": page_num,
    }
    return f"{SEARCH_API_URL}?{urlencode(params)}"
