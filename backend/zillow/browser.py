import asyncio
import logging
import os
import random
import shutil
import tempfile
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from backend.zillow.config import (
    CHROME_EXECUTABLE,
    HEADLESS,
    LAUNCH_BACKOFF_S,
    LAUNCH_RETRIES,
    NAV_TIMEOUT_MS,
    OP_TIMEOUT_MS,
)
from backend.zillow.errors import LaunchFailed

log = logging.getLogger("zillow")

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
    "--disable-blink-features=AutomationControlled",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
]

BASE_VIEWPORT = (1280, 900)
VIEWPORT_JITTER = 120

SCROLL_JS = "window.scrollBy(0, Math.max(600, Math.floor(document.body.scrollHeight / 4)))"

# Serializes executable preparation only; sessions themselves run unlocked.
_launch_lock = threading.Lock()


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def jittered_viewport() -> dict:
    w, h = BASE_VIEWPORT
    return {
        "width": w + random.randint(0, VIEWPORT_JITTER),
        "height": h + random.randint(0, VIEWPORT_JITTER),
    }


# --- page helpers -----------------------------------------------------------

async def human_pause(page, lo_ms: int = 250, hi_ms: int = 900) -> None:
    await page.wait_for_timeout(random.randint(lo_ms, hi_ms))


async def progressive_scroll(page, steps: int = 3, wait_ms: int = 600) -> None:
    for _ in range(steps):
        await page.evaluate(SCROLL_JS)
        await page.wait_for_timeout(wait_ms)


def _prepare_executable(src: str) -> Tuple[str, str]:
    """
    Copy the browser executable to a fresh temp path. Re-invoking a binary
    that another launch is still writing fails with ETXTBSY, so each attempt
    gets its own copy.
    """
    with _launch_lock:
        tmp_dir = tempfile.mkdtemp(prefix="zillow-chrome-")
        dst = os.path.join(tmp_dir, os.path.basename(src))
        shutil.copy2(src, dst)
        os.chmod(dst, 0o755)
    return dst, tmp_dir


@dataclass
class SessionState:
    """Live browser handles and the captured-response buffer for one run."""

    page: Any
    browser: Any = None
    context: Any = None
    playwright: Any = None
    captured: List[dict] = field(default_factory=list)
    temp_dir: Optional[str] = None
    user_agent: Optional[str] = None
    viewport: Optional[dict] = None

    async def close(self) -> None:
        # Best-effort: a failing close never masks the run's own outcome
        for label, handle in (("page", self.page), ("context", self.context), ("browser", self.browser)):
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as e:
                log.debug("close %s failed: %s", label, e)
        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                log.debug("playwright stop failed: %s", e)
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)


async def launch_session(
    *,
    headless: bool = HEADLESS,
    executable: Optional[str] = CHROME_EXECUTABLE,
    retries: int = LAUNCH_RETRIES,
    backoff_s: float = LAUNCH_BACKOFF_S,
    playwright_factory=async_playwright,
    stealth: Optional[Stealth] = None,
) -> SessionState:
    """Start a headless browser with anti-detection defaults, retrying transient failures."""
    last_exc: Optional[BaseException] = None
    for attempt in range(retries + 1):
        if attempt:
            await asyncio.sleep(attempt * backoff_s)
        pw = None
        tmp_dir = None
        try:
            exe = None
            if executable:
                exe, tmp_dir = _prepare_executable(executable)
            pw = await playwright_factory().start()
            browser = await pw.chromium.launch(
                headless=headless,
                executable_path=exe,
                args=LAUNCH_ARGS,
                timeout=OP_TIMEOUT_MS,
            )
            viewport = jittered_viewport()
            ua = random_user_agent()
            context = await browser.new_context(viewport=viewport, user_agent=ua, locale="en-US")
            # Patch the context so every page it opens starts hardened
            await (stealth or Stealth()).apply_stealth_async(context)
            page = await context.new_page()
            page.set_default_navigation_timeout(NAV_TIMEOUT_MS)
            page.set_default_timeout(OP_TIMEOUT_MS)
            log.info("LAUNCH ✔ attempt=%d viewport=%sx%s", attempt + 1, viewport["width"], viewport["height"])
            return SessionState(
                page=page,
                browser=browser,
                context=context,
                playwright=pw,
                temp_dir=tmp_dir,
                user_agent=ua,
                viewport=viewport,
            )
        except Exception as e:
            last_exc = e
            log.warning("LAUNCH ✘ attempt %d/%d: %s", attempt + 1, retries + 1, e)
            if pw is not None:
                try:
                    await pw.stop()
                except Exception as stop_err:
                    log.debug("playwright stop after failed launch: %s", stop_err)
            if tmp_dir:
                shutil.rmtree(tmp_dir, ignore_errors=True)
    raise LaunchFailed(f"browser launch failed after {retries + 1} attempts: {last_exc}") from last_exc


@asynccontextmanager
async def open_session(**kwargs):
    """Launch a session and guarantee teardown on every exit path."""
    session = await launch_session(**kwargs)
    try:
        yield session
    finally:
        await session.close()
