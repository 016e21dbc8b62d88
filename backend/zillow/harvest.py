import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple
from urllib.parse import unquote

from bs4 import BeautifulSoup
from playwright.async_api import Error as PWError

from backend.py_models.listing import DiscoveryWarning, ListingCandidate, PropertyMode
from backend.zillow.browser import human_pause, progressive_scroll
from backend.zillow.client import debug_save
from backend.zillow.config import (
    HARVEST_STRATEGIES,
    MAX_CANDIDATES,
    SEARCH_API_CAP,
    SEARCH_API_PAGES,
    SNIFF_POLL_MS,
    SNIFF_WAIT_MS,
)
from backend.zillow.errors import DiagnosedError, PhaseResult
from backend.zillow.query import search_api_url
from backend.zillow.walker import (
    Extraction,
    candidate_from_record,
    canonical_url,
    dedupe_candidates,
    extract_candidates,
    is_detail_url,
    parse_json_text,
    scan_detail_urls,
)

log = logging.getLogger("zillow")

# Internal search endpoints whose JSON carries result lists
SEARCH_API_RE = re.compile(
    r"(GetSearchPageState|async-create-search-page-state|searchQueryState|/search/|/graphql)",
    re.I,
)

RESOURCE_TIMING_JS = (
    "() => performance.getEntriesByType('navigation')"
    ".concat(performance.getEntriesByType('resource'))"
    ".map(e => e.name)"
)
# Runs inside the page so the request carries the session cookies
SEARCH_FETCH_JS = (
    "async (url) => {"
    " const r = await fetch(url, {credentials: 'include', headers: {accept: 'application/json'}});"
    " return r.ok ? await r.text() : ''; }"
)

ANCHOR_SELECTORS = [
    "a[data-test='property-card-link']",
    "article[data-test='property-card'] a[href]",
    "[data-testid='property-card'] a[href]",
    "a[href*='/homedetails/']",
    "a[href*='_zpid']",
    "a[href^='/b/']",
]
_CARD_TESTS = {"property-card", "search-result-list-item"}
_ADDRESS_SELECTORS = ["address", "[data-test='property-card-addr']", "[data-testid*='address']"]
_PRICE_SELECTORS = [
    "[data-test='property-card-price']",
    "[data-testid='property-card-price']",
    "[data-testid*='price']",
    "span[class*='Price']",
]
_BEDS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:bds?|beds?|bedrooms?)\b", re.I)

DOM_SCROLL_CYCLES = 4


def attach_response_sniffer(page, bucket: List[dict]) -> None:
    """Buffer bodies of search-API responses as the page loads and scrolls."""
    tasks = set()

    async def _grab(resp):
        url = getattr(resp, "url", "") or ""
        if not SEARCH_API_RE.search(url):
            return
        try:
            text = await resp.text()
        except Exception as e:
            log.debug("sniff: body unavailable for %s: %s", url, e)
            return
        if text:
            debug_save("net", url, text)
            bucket.append({"url": url, "text": text})

    def _on_response(resp):
        task = asyncio.ensure_future(_grab(resp))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    page.on("response", _on_response)


# --- strategy context & outcome ---------------------------------------------

@dataclass
class HarvestContext:
    page: Any
    captured: List[dict]
    suspected_type: Optional[PropertyMode] = None
    sniff_wait_ms: int = SNIFF_WAIT_MS
    embedded_present: bool = False
    search_state: Optional[dict] = None


@dataclass
class StrategyAttempt:
    name: str
    raw_hits: int = 0
    kept: int = 0
    filtered: int = 0
    paths: List[str] = field(default_factory=list)
    error: Optional[str] = None
    elapsed_ms: int = 0

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "rawHits": self.raw_hits,
            "kept": self.kept,
            "filtered": self.filtered,
            "paths": self.paths[:10],
            "error": self.error,
            "elapsedMs": self.elapsed_ms,
        }


@dataclass
class HarvestOutcome:
    candidates: List[ListingCandidate] = field(default_factory=list)
    strategy: Optional[str] = None
    attempts: List[StrategyAttempt] = field(default_factory=list)
    embedded_present: bool = False

    def diagnostics(self) -> dict:
        return {
            "strategy": self.strategy,
            "candidates": len(self.candidates),
            "embeddedStatePresent": self.embedded_present,
            "attempts": [a.as_dict() for a in self.attempts],
        }

    def empty_warning(self) -> DiscoveryWarning:
        names = [a.name for a in self.attempts]
        if names == ["embedded"] and not self.embedded_present:
            return DiscoveryWarning.NO_NEXT_DATA
        if self.embedded_present:
            return DiscoveryWarning.NO_CANDIDATES
        return DiscoveryWarning.SELECTORS_EMPTY


def _merge(into: Extraction, part: Extraction) -> None:
    into.candidates.extend(part.candidates)
    into.paths.extend(part.paths)
    into.raw_hits += part.raw_hits
    into.filtered += part.filtered


# --- tier 1: embedded application state ---------------------------------------

def embedded_state_blobs(html: str) -> List[Tuple[Any, str]]:
    """Serialized state blobs in the initial payload, as (parsed, raw) pairs."""
    soup = BeautifulSoup(html or "", "lxml")
    scripts = []
    nxt = soup.select_one("script#__NEXT_DATA__")
    if nxt is not None:
        scripts.append(nxt)
    scripts.extend(
        s for s in soup.select("script[type='application/json'], script[data-zrr-shared-data-key]")
        if s is not nxt
    )
    out = []
    for s in scripts:
        raw = (s.string or s.get_text() or "").strip()
        if raw.startswith("<!--") and raw.endswith("-->"):
            raw = raw[4:-3].strip()
        doc = parse_json_text(raw)
        if isinstance(doc, (dict, list)):
            out.append((doc, raw))
    return out


async def harvest_embedded(ctx: HarvestContext) -> Extraction:
    html = await ctx.page.content()
    blobs = embedded_state_blobs(html)
    ctx.embedded_present = bool(blobs)
    out = Extraction()
    for doc, raw in blobs:
        _merge(out, extract_candidates(doc, raw, suspected_type=ctx.suspected_type, source="embedded"))
    return out


# --- tier 2: live network responses --------------------------------------------

def flatten_search_results(doc: Any) -> List[dict]:
    """Targeted read of the search API shape: cat1.searchResults.{listResults,mapResults}."""
    if not isinstance(doc, dict):
        return []
    cat1 = doc.get("cat1") if isinstance(doc.get("cat1"), dict) else doc
    results = cat1.get("searchResults") if isinstance(cat1, dict) else None
    if not isinstance(results, dict):
        return []
    out = []
    for key in ("listResults", "mapResults"):
        items = results.get(key)
        if isinstance(items, list):
            out.extend(it for it in items if isinstance(it, dict))
    return out


def extract_from_response(url: str, text: str, suspected_type: Optional[PropertyMode] = None) -> Extraction:
    doc = parse_json_text(text)
    if doc is None:
        return Extraction()
    targeted = flatten_search_results(doc)
    if targeted:
        out = Extraction(paths=[f"{url}#cat1.searchResults"])
        for rec in targeted:
            out.raw_hits += 1
            cand = candidate_from_record(rec, suspected_type=suspected_type, source="network")
            if cand is None:
                out.filtered += 1
            else:
                out.candidates.append(cand)
        return out
    return extract_candidates(doc, text, suspected_type=suspected_type, source="network")


async def fetch_search_pages(
    page,
    state: dict,
    *,
    suspected_type: Optional[PropertyMode] = None,
    max_pages: int = SEARCH_API_PAGES,
    cap: int = SEARCH_API_CAP,
) -> Extraction:
    """
    Page through the search API from `state`, starting at its current page.
    Stops at the first page with no listings; results are deduped by URL.
    """
    out = Extraction()
    seen = set()
    pagination = state.get("pagination")
    first = int(pagination.get("currentPage") or 1) if isinstance(pagination, dict) else 1
    for page_num in range(first, first + max_pages):
        url = search_api_url(state, page_num)
        try:
            text = await page.evaluate(SEARCH_FETCH_JS, url)
        except PWError as e:
            log.debug("search api page %d failed: %s", page_num, e)
            break
        if not text:
            break
        debug_save("api", url, text)
        part = extract_from_response(url, text, suspected_type)
        out.paths.extend(part.paths)
        out.raw_hits += part.raw_hits
        out.filtered += part.filtered
        for c in part.candidates:
            key = canonical_url(c.url)
            if key not in seen:
                seen.add(key)
                out.candidates.append(c)
        log.info("SEARCH API page %d → %d", page_num, len(part.candidates))
        if not part.candidates or len(out.candidates) >= cap:
            break
    out.candidates = out.candidates[:cap]
    return out


async def harvest_network(ctx: HarvestContext) -> Extraction:
    out = Extraction()
    consumed = 0
    await progressive_scroll(ctx.page, steps=2, wait_ms=500)
    polls = max(1, ctx.sniff_wait_ms // SNIFF_POLL_MS)
    for _ in range(polls):
        fresh = ctx.captured[consumed:]
        consumed += len(fresh)
        for blob in fresh:
            _merge(out, extract_from_response(blob.get("url") or "", blob.get("text") or "", ctx.suspected_type))
        if out.candidates:
            return out
        await ctx.page.wait_for_timeout(SNIFF_POLL_MS)
    # Nothing sniffed: ask the search API directly
    if ctx.search_state:
        _merge(out, await fetch_search_pages(ctx.page, ctx.search_state, suspected_type=ctx.suspected_type))
    return out


# --- tier 3: rendered DOM ------------------------------------------------------

def _closest_card(a):
    for p in a.parents:
        if getattr(p, "name", None) in ("article", "li"):
            return p
        if p.get("data-test") in _CARD_TESTS or p.get("data-testid") in _CARD_TESTS:
            return p
    return a.parent or a


def _first_text(node, selectors) -> Optional[str]:
    for sel in selectors:
        el = node.select_one(sel)
        if el is not None:
            txt = el.get_text(" ", strip=True)
            if txt:
                return txt
    return None


def cards_from_html(html: str, suspected_type: Optional[PropertyMode] = None) -> Extraction:
    soup = BeautifulSoup(html or "", "lxml")
    out = Extraction()
    seen = set()
    for sel in ANCHOR_SELECTORS:
        for a in soup.select(sel):
            href = a.get("href")
            if not href or id(a) in seen:
                continue
            seen.add(id(a))
            out.raw_hits += 1
            url = canonical_url(href)
            if not is_detail_url(url):
                out.filtered += 1
                continue
            card = _closest_card(a)
            beds = _BEDS_RE.search(card.get_text(" ", strip=True))
            out.candidates.append(ListingCandidate(
                url=url,
                address=_first_text(card, _ADDRESS_SELECTORS),
                price=_first_text(card, _PRICE_SELECTORS),
                beds=float(beds.group(1)) if beds else None,
                suspected_type=suspected_type,
                source="dom",
            ))
        if out.candidates:
            out.paths.append(sel)
            break
    return out


async def harvest_dom(ctx: HarvestContext) -> Extraction:
    for _ in range(DOM_SCROLL_CYCLES):
        await progressive_scroll(ctx.page, steps=2, wait_ms=500)
        await human_pause(ctx.page)
    html = await ctx.page.content()
    debug_save("dom", getattr(ctx.page, "url", ""), html)
    return cards_from_html(html, ctx.suspected_type)


# --- tier 4: resource timing buffer ---------------------------------------------

async def harvest_timing(ctx: HarvestContext) -> Extraction:
    names = await ctx.page.evaluate(RESOURCE_TIMING_JS) or []
    out = Extraction()
    for name in names:
        out.raw_hits += 1
        urls = scan_detail_urls(unquote(str(name)))
        if not urls:
            out.filtered += 1
            continue
        out.candidates.extend(
            ListingCandidate(url=u, suspected_type=ctx.suspected_type, source="timing") for u in urls
        )
    return out


Strategy = Callable[[HarvestContext], Awaitable[Extraction]]

STRATEGIES = {
    "embedded": harvest_embedded,
    "network": harvest_network,
    "dom": harvest_dom,
    "timing": harvest_timing,
}


def default_strategies(names: Sequence[str] = HARVEST_STRATEGIES) -> List[Tuple[str, Strategy]]:
    return [(n, STRATEGIES[n]) for n in names if n in STRATEGIES]


async def run_cascade(
    page,
    captured: List[dict],
    *,
    suspected_type: Optional[PropertyMode] = None,
    strategies: Optional[Sequence[Tuple[str, Strategy]]] = None,
    max_candidates: int = MAX_CANDIDATES,
    sniff_wait_ms: int = SNIFF_WAIT_MS,
    search_state: Optional[dict] = None,
) -> PhaseResult[HarvestOutcome]:
    """
    Try each harvest tier in order; the first that yields candidates wins and
    the rest are never invoked. An empty outcome carries a diagnosed warning.
    """
    ctx = HarvestContext(
        page=page,
        captured=captured,
        suspected_type=suspected_type,
        sniff_wait_ms=sniff_wait_ms,
        search_state=search_state,
    )
    outcome = HarvestOutcome()
    for name, fn in (strategies if strategies is not None else default_strategies()):
        attempt = StrategyAttempt(name=name)
        started = time.monotonic()
        try:
            part = await fn(ctx)
            kept = dedupe_candidates(part.candidates, cap=max_candidates)
            attempt.raw_hits, attempt.filtered, attempt.paths = part.raw_hits, part.filtered, part.paths
            attempt.kept = len(kept)
        except Exception as e:
            kept = []
            attempt.error = f"{type(e).__name__}: {e}"[:300]
            log.warning("HARVEST %s failed: %s", name, e)
        attempt.elapsed_ms = int((time.monotonic() - started) * 1000)
        outcome.attempts.append(attempt)
        outcome.embedded_present = ctx.embedded_present
        log.info("HARVEST %s → %d (raw=%d filtered=%d)", name, attempt.kept, attempt.raw_hits, attempt.filtered)
        if kept:
            outcome.candidates = kept
            outcome.strategy = name
            return PhaseResult(value=outcome, diagnostics=outcome.diagnostics())

    warning = outcome.empty_warning()
    tried = ",".join(a.name for a in outcome.attempts) or "none"
    return PhaseResult(
        value=outcome,
        error=DiagnosedError(warning=warning, phase="harvest", message=f"no candidates from {tried}"),
        diagnostics=outcome.diagnostics(),
    )
