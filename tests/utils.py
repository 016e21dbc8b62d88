# tests/utils.py
"""
In-memory stand-ins for the browser page, the search endpoint and the
leads collection, plus small page-builders used across the suite.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import parse_qs, quote, urlparse

import httpx
from bs4 import BeautifulSoup

from backend.zillow.browser import SessionState
from backend.zillow.harvest import RESOURCE_TIMING_JS, SEARCH_FETCH_JS

ZILLOW = "https://www.zillow.com"
AUSTIN_RENTALS = f"{ZILLOW}/austin-tx/rentals/"


# -------- Page fakes --------
@dataclass
class Route:
    html: str = ""
    status: int = 200
    text: Optional[str] = None
    delay: float = 0.0
    exc: Optional[BaseException] = None
    fail_times: int = 0


@dataclass
class FakeResponse:
    status: int
    url: str


class FakePage:
    """Just enough of a Playwright page for the engine: goto/content/inner_text/evaluate."""

    def __init__(
        self,
        routes: Optional[Dict[str, Route]] = None,
        *,
        default_status: int = 404,
        resource_names: Iterable[str] = (),
        api_pages: Optional[Dict[int, dict]] = None,
    ):
        self.routes = dict(routes or {})
        self.default_status = default_status
        self.resource_names = list(resource_names)
        self.api_pages = dict(api_pages or {})
        self.fetched: List[str] = []
        self.url = "about:blank"
        self.visited: List[str] = []
        self.evaluated: List[str] = []
        self.handlers: Dict[str, list] = {}
        self.waited_ms = 0
        self.closed = False
        self._html = ""
        self._text = ""

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        route = self.routes.get(url) or Route(status=self.default_status)
        if route.delay:
            await asyncio.sleep(route.delay)
        if route.exc is not None and route.fail_times != 0:
            route.fail_times -= 1
            raise route.exc
        self.url = url
        self._html = route.html
        if route.text is not None:
            self._text = route.text
        else:
            self._text = BeautifulSoup(route.html or "", "lxml").get_text("\n", strip=True)
        return FakeResponse(route.status, url)

    async def content(self):
        return self._html

    async def inner_text(self, selector, timeout=None):
        return self._text

    async def evaluate(self, script, *args):
        self.evaluated.append(script)
        if script == RESOURCE_TIMING_JS:
            return list(self.resource_names)
        if script == SEARCH_FETCH_JS:
            url = args[0]
            self.fetched.append(url)
            body = self.api_pages.get(search_api_page(url))
            return json.dumps(body) if body is not None else ""
        return None

    async def wait_for_timeout(self, ms):
        self.waited_ms += ms
        await asyncio.sleep(0)

    async def query_selector(self, selector):
        return None

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def close(self):
        self.closed = True


class FakeSessions:
    """Session factory handing each run a fresh FakePage over the same routes."""

    def __init__(self, routes: Optional[Dict[str, Route]] = None, **page_kwargs):
        self.routes = routes or {}
        self.page_kwargs = page_kwargs
        self.opened: List[SessionState] = []
        self.active = 0
        self.peak = 0

    @asynccontextmanager
    async def __call__(self):
        page = FakePage(self.routes, **self.page_kwargs)
        state = SessionState(page=page)
        self.opened.append(state)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            yield state
        finally:
            self.active -= 1
            await state.close()


# -------- Search endpoint fake --------
def search_results_html(urls: Iterable[str]) -> str:
    links = "".join(
        f'<div class="result"><a class="result__a" href="//duckduckgo.com/l/?uddg={quote(u, safe="")}&rut=x">r</a></div>'
        for u in urls
    )
    return f"<html><body>{links}</body></html>"


class FakeSearch:
    """Client factory whose no-script search answers every query with the same hits."""

    def __init__(self, hits: Iterable[str] = (), status: int = 200):
        self.hits = list(hits)
        self.status = status
        self.queries: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.queries.append(request.url.params.get("q", ""))
        return httpx.Response(self.status, text=search_results_html(self.hits))

    def __call__(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# -------- Mongo fake --------
class FakeBulkResult:
    def __init__(self, n):
        self.upserted_count = n
        self.modified_count = 0
        self.matched_count = 0


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs
        self.limit_n = None

    def limit(self, n):
        self.limit_n = n
        return self

    def __iter__(self):
        docs = self.docs if self.limit_n is None else self.docs[: self.limit_n]
        return iter(docs)


class FakeCollection:
    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.bulk_calls = []
        self.update_calls = []
        self.find_queries = []
        self.cursors = []

    def bulk_write(self, ops, ordered=True):
        self.bulk_calls.append((list(ops), ordered))
        return FakeBulkResult(len(ops))

    def update_one(self, flt, update, upsert=False):
        self.update_calls.append((flt, update, upsert))

    def find(self, query):
        self.find_queries.append(query)
        cur = FakeCursor(self.docs)
        self.cursors.append(cur)
        return cur


# -------- Page builders --------
def next_data_html(records: List[dict], *, extra_body: str = "") -> str:
    state = {"props": {"pageProps": {"searchPageState": {"cat1": {"searchResults": {"listResults": records}}}}}}
    return (
        "<html><head>"
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(state)}</script>'
        f"</head><body>{extra_body}</body></html>"
    )


def search_record(zpid: str, *, slug: str = "1-Main-St-Austin-TX-78701", query: str = "", **fields) -> dict:
    rec = {
        "zpid": zpid,
        "detailUrl": f"/homedetails/{slug}/{zpid}_zpid/{query}",
        "address": "1 Main St, Austin, TX 78701",
        "unformattedPrice": 1500,
        "beds": 2,
        "baths": 1,
    }
    rec.update(fields)
    return rec


def detail_url(zpid: str, slug: str = "1-Main-St-Austin-TX-78701") -> str:
    return f"{ZILLOW}/homedetails/{slug}/{zpid}_zpid/"


OWNER_DETAIL_TEXT = (
    "1 Main St, Austin, TX 78701\n"
    "$1,500/mo\n"
    "2 bd 1 ba\n"
    "For rent\n"
    "Listed by property owner Jane Doe\n"
    "(512) 555-0100\n"
)

AGENT_DETAIL_TEXT = (
    "1 Main St, Austin, TX 78701\n"
    "$1,500/mo\n"
    "For rent\n"
    "Listed by: Pat Smith, Keller Realty\n"
)


def search_api_body(records: List[dict]) -> dict:
    return {"cat1": {"searchResults": {"listResults": records}}}


def search_api_state(url: str) -> dict:
    return json.loads(parse_qs(urlparse(url).query)["searchQueryState"][0])


def search_api_page(url: str) -> int:
    return search_api_state(url)["pagination"]["currentPage"]
