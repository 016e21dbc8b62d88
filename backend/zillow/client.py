import logging

import httpx

from backend.zillow.config import HTTP_DEBUG, PROXY, ZILLOW_DEBUG

log = logging.getLogger("zillow")

SEARCH_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Cache-Control": "no-cache",
}


def new_client(timeout: float = 20.0) -> httpx.AsyncClient:
    """
    AsyncClient for the no-script search endpoint, with optional proxy and
    debug logging. Transient connect errors are retried by the transport.
    """
    if HTTP_DEBUG:
        logging.getLogger("httpx").setLevel(logging.DEBUG)

    limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
    transport = httpx.AsyncHTTPTransport(retries=2, limits=limits, proxy=PROXY)
    return httpx.AsyncClient(
        timeout=timeout,
        headers=SEARCH_HEADERS,
        follow_redirects=True,
        transport=transport,
    )


async def fetch_text(client: httpx.AsyncClient, url: str) -> str:
    r = await client.get(url)
    r.raise_for_status()
    text = r.text
    debug_save("http", url, text)
    return text


def debug_save(kind: str, url: str, text: str) -> None:
    """With ZILLOW_DEBUG set, keep a copy of a fetched body under /tmp."""
    if not ZILLOW_DEBUG or not text:
        return
    h = abs(hash(f"{url}|{len(text)}"))
    fname = f"/tmp/zillow_{kind}_{h}.txt"
    try:
        with open(fname, "w", encoding="utf-8", errors="ignore") as f:
            f.write(text)
        log.debug("saved %s → %s :: %s", kind.upper(), fname, url)
    except OSError as e:
        log.debug("debug save failed: %s", e)
