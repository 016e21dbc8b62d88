import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from urllib.parse import parse_qsl, unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from playwright.async_api import Error as PWError

from backend.py_models.listing import PropertyMode
from backend.zillow.client import debug_save, fetch_text
from backend.zillow.config import NAV_TIMEOUT_MS
from backend.zillow.errors import BlockedError, NavigationFailed, PhaseResult, looks_blocked
from backend.zillow.browser import human_pause
from backend.zillow.query import html_search_url, interactive_search_url

log = logging.getLogger("zillow")

TARGET_HOST = "zillow.com"

# Ads, facets and pages that are not a search-results category
REJECT_TOKENS = (
    "y.js", "aclick", "ad_domain", "ad_provider",
    "pet-friendly", "newest", "_sort", "sort=", "price-", "/cheap",
    "/homedetails/", "/b/", "/agent", "/profile/", "/professionals/",
    "/mortgage", "/research/", "/home-values/", "/rental-manager/",
    "/news/", "/z/", "/user/", "/browse/",
)
_CANONICAL_CATEGORY = re.compile(
    r"^/(?:[a-z0-9-]+/(?:rent-houses|rentals|rent|fsbo|for_rent|for_sale_by_owner|for_sale)?"
    r"|homes/(?:for_rent|for_sale|fsbo)/[a-z0-9_-]+)/?$",
    re.I,
)

OVERLAY_SELECTORS = [
    'button:has-text("Accept")',
    'button:has-text("I agree")',
    'button[aria-label*="accept"]',
    '[data-test="privacy-accept"]',
    'button[aria-label*="close"]',
    '[data-test="close"]',
    '[data-testid="close"]',
]


@dataclass
class Landing:
    url: str
    source: str
    query: Optional[str] = None
    status: Optional[int] = None
    suspected_type: Optional[PropertyMode] = None
    tried: List[dict] = field(default_factory=list)

    def diagnostics(self) -> dict:
        return {
            "url": self.url,
            "source": self.source,
            "query": self.query,
            "status": self.status,
            "tried": self.tried,
        }


def _decode_result_href(href: str) -> str:
    """Unwrap the search engine's redirect links (…/l/?uddg=<target>)."""
    absolute = urljoin("https://duckduckgo.com/", href)
    p = urlparse(absolute)
    if p.netloc.endswith("duckduckgo.com") and p.path.startswith("/l/"):
        target = dict(parse_qsl(p.query)).get("uddg")
        if target:
            return unquote(target)
    return absolute


def extract_result_links(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "lxml")
    out = []
    seen = set()
    for a in soup.select("a[href]"):
        u = _decode_result_href(a.get("href") or "")
        if u.startswith("http") and u not in seen:
            seen.add(u)
            out.append(u)
    return out


def _landing_rank(url: str) -> Optional[int]:
    p = urlparse(url)
    host = p.netloc.lower()
    if not (host == TARGET_HOST or host.endswith("." + TARGET_HOST)):
        return None
    low = url.lower()
    if any(tok in low for tok in REJECT_TOKENS):
        return None
    if _CANONICAL_CATEGORY.match(p.path or "/"):
        return 0
    depth = len([s for s in p.path.split("/") if s])
    return 1 if 0 < depth <= 3 else None


def pick_landing(urls: Sequence[str]) -> Optional[str]:
    """Best target-site landing among search hits: canonical category paths first."""
    ranked = []
    for i, u in enumerate(urls):
        r = _landing_rank(u)
        if r is not None:
            ranked.append((r, i, u))
    if not ranked:
        return None
    ranked.sort()
    p = urlparse(ranked[0][2])
    return f"https://www.{TARGET_HOST}{p.path}"


def infer_mode(url: str, requested: PropertyMode) -> Optional[PropertyMode]:
    if requested is not PropertyMode.BOTH:
        return requested
    path = urlparse(url).path.lower()
    if "rent" in path:
        return PropertyMode.RENT
    if "fsbo" in path or "sale" in path:
        return PropertyMode.SALE
    return None


async def _html_search(client: httpx.AsyncClient, query: str) -> List[str]:
    try:
        html = await fetch_text(client, html_search_url(query))
    except httpx.HTTPError as e:
        log.info("search(html) failed for %r: %s", query, e)
        return []
    return extract_result_links(html)


async def _interactive_search(page, query: str) -> List[str]:
    url = interactive_search_url(query)
    try:
        await page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        await human_pause(page, 600, 1400)
        html = await page.content()
    except PWError as e:
        log.info("search(interactive) failed for %r: %s", query, e)
        return []
    debug_save("search", url, html)
    return extract_result_links(html)


async def navigate(page, url: str) -> Optional[int]:
    """
    Load `url`; None when navigation itself fails. Raises BlockedError when
    a challenge or rate-limit page comes back instead of content.
    """
    try:
        resp = await page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
    except PWError as e:
        log.warning("navigation failed %s: %s", url, e)
        return None
    status = getattr(resp, "status", None) if resp is not None else None
    try:
        body = await page.content()
    except PWError:
        body = ""
    if looks_blocked(status, body):
        raise BlockedError(f"bot challenge at {url} (status={status})")
    return status if status is not None else 200


async def dismiss_overlays(page) -> None:
    for sel in OVERLAY_SELECTORS:
        try:
            el = await page.query_selector(sel)
            if el is not None:
                await el.click(timeout=1500)
                await page.wait_for_timeout(250)
        except PWError as e:
            log.debug("overlay %s not dismissed: %s", sel, e)


async def acquire_landing(
    page,
    client: httpx.AsyncClient,
    queries: Sequence[str],
    direct_urls: Sequence[str],
    *,
    requested: PropertyMode = PropertyMode.RENT,
    srp_url: Optional[str] = None,
) -> PhaseResult[Landing]:
    """
    Resolve and load a search-results page on the target site:
    no-script search, interactive search, one interactive retry of the first
    query, then the constructed direct URLs. A caller-supplied results URL
    skips the searches and is navigated first.
    """
    tried: List[dict] = []
    picked = (srp_url, "direct-query", None) if srp_url else None

    if picked is None:
        for q in queries:
            hit = pick_landing(await _html_search(client, q))
            tried.append({"mode": "html", "query": q, "hit": hit})
            if hit:
                picked = (hit, "html-search", q)
                break

    if picked is None:
        for q in queries:
            hit = pick_landing(await _interactive_search(page, q))
            tried.append({"mode": "interactive", "query": q, "hit": hit})
            if hit:
                picked = (hit, "interactive-search", q)
                break

    if picked is None and queries:
        await human_pause(page, 800, 1600)
        hit = pick_landing(await _interactive_search(page, queries[0]))
        tried.append({"mode": "interactive-retry", "query": queries[0], "hit": hit})
        if hit:
            picked = (hit, "interactive-retry", queries[0])

    targets = ([picked] if picked else []) + [(u, "direct", None) for u in direct_urls]
    try:
        for url, source, q in targets:
            status = await navigate(page, url)
            tried.append({"mode": "navigate", "url": url, "status": status})
            if status is not None and status < 400:
                await dismiss_overlays(page)
                landing = Landing(
                    url=url,
                    source=source,
                    query=q,
                    status=status,
                    suspected_type=infer_mode(url, requested),
                    tried=tried,
                )
                log.info("LANDING ✔ %s via %s", url, source)
                return PhaseResult(value=landing, diagnostics=landing.diagnostics())
    except BlockedError as e:
        log.warning("LANDING ✘ blocked: %s", e)
        return PhaseResult.failed(e, "landing", tried=tried)

    log.warning("LANDING ✘ no page loaded (%d attempts)", len(tried))
    return PhaseResult.failed(NavigationFailed("no landing page could be loaded"), "landing", tried=tried)
