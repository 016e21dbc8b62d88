"""
Listing discovery engine: one (city/zip, mode) unit of work per run.

    query → landing → harvest cascade → detail verification → assemble

`run_discovery` never raises; every failure ends up as a warning code on an
empty-or-partial DiscoveryResult, and the browser session is torn down on
every path.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.py_models.listing import (
    DiscoveryFilters,
    DiscoveryResult,
    DiscoveryWarning,
    PropertyMode,
    VerifiedListing,
)
from backend.zillow.assemble import assemble
from backend.zillow.browser import open_session
from backend.zillow.client import new_client
from backend.zillow.config import MAX_CANDIDATES, RUN_BUDGET_S, SNIFF_WAIT_MS
from backend.zillow.errors import DiagnosedError, classify_error
from backend.zillow.harvest import attach_response_sniffer, run_cascade
from backend.zillow.landing import acquire_landing
from backend.zillow.query import base_search_state, build_direct_urls, build_queries, search_state_from_url
from backend.zillow.verify import verify_candidates

log = logging.getLogger("zillow")

StatusSink = Callable[[Dict[str, Any]], None]


@dataclass
class DiscoveryRunHandle:
    """Per-run status; each concurrent run owns its own handle."""

    city: str
    mode: PropertyMode
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    phase: str = "pending"
    counts: Dict[str, int] = field(default_factory=dict)
    warning: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    sink: Optional[StatusSink] = field(default=None, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "city": self.city,
            "mode": self.mode.value,
            "phase": self.phase,
            "counts": dict(self.counts),
            "warning": self.warning,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }

    def update(self, phase: str, **counts: int) -> None:
        self.phase = phase
        self.counts.update(counts)
        if self.phase == "launching" and self.started_at is None:
            self.started_at = datetime.now(timezone.utc)
        if self.sink is not None:
            try:
                self.sink(self.snapshot())
            except Exception as e:
                log.debug("status sink failed: %s", e)

    def finish(self, result: DiscoveryResult) -> None:
        self.finished_at = datetime.now(timezone.utc)
        self.warning = result.warning.value if result.warning else None
        self.update("done", listings=len(result.listings))


@dataclass
class _RunProgress:
    phase: str = "pending"
    verified: List[VerifiedListing] = field(default_factory=list)
    error: Optional[DiagnosedError] = None
    timed_out: bool = False
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def fail(self, err: Optional[DiagnosedError]) -> None:
        if err is not None and self.error is None:
            self.error = err


def _as_mode(property_type) -> Optional[PropertyMode]:
    if isinstance(property_type, PropertyMode):
        return property_type
    try:
        return PropertyMode(str(property_type or "").strip().lower())
    except ValueError:
        return None


async def _pipeline(
    progress: _RunProgress,
    handle: DiscoveryRunHandle,
    city: str,
    mode: PropertyMode,
    filters: DiscoveryFilters,
    *,
    session_factory,
    client_factory,
    strategies,
    max_candidates: int,
    sniff_wait_ms: int,
    srp_url: Optional[str] = None,
) -> None:
    queries = build_queries(mode, city) if city else []
    direct_urls = build_direct_urls(mode, city) if city else []

    progress.phase = "launch"
    handle.update("launching")
    async with session_factory() as session, client_factory() as client:
        attach_response_sniffer(session.page, session.captured)

        progress.phase = "landing"
        handle.update("landing")
        landing = await acquire_landing(session.page, client, queries, direct_urls, requested=mode, srp_url=srp_url)
        progress.diagnostics["landing"] = landing.diagnostics
        if not landing.ok:
            progress.fail(landing.error)
            return

        search_state = search_state_from_url(landing.value.url)
        if search_state is None and city:
            search_state = base_search_state(mode, city)

        progress.phase = "harvest"
        handle.update("harvesting")
        harvest = await run_cascade(
            session.page,
            session.captured,
            suspected_type=landing.value.suspected_type,
            strategies=strategies,
            max_candidates=max_candidates,
            sniff_wait_ms=sniff_wait_ms,
            search_state=search_state,
        )
        progress.diagnostics["harvest"] = harvest.diagnostics
        if not harvest.ok:
            progress.fail(harvest.error)
            return

        candidates = harvest.value.candidates
        progress.phase = "verify"
        handle.update("verifying", candidates=len(candidates))
        verified = await verify_candidates(
            session.page,
            candidates,
            requested=mode,
            filters=filters,
            sink=progress.verified,
        )
        progress.diagnostics["verify"] = verified.diagnostics
        progress.fail(verified.error)


async def run_discovery(
    city_or_zip: str,
    property_type="rent",
    filters: Optional[DiscoveryFilters] = None,
    *,
    handle: Optional[DiscoveryRunHandle] = None,
    status_sink: Optional[StatusSink] = None,
    session_factory=open_session,
    client_factory=new_client,
    strategies=None,
    run_budget_s: Optional[float] = RUN_BUDGET_S,
    max_candidates: int = MAX_CANDIDATES,
    sniff_wait_ms: int = SNIFF_WAIT_MS,
    srp_url: Optional[str] = None,
) -> DiscoveryResult:
    started = time.monotonic()
    filters = filters or DiscoveryFilters()
    city = (city_or_zip or "").strip()
    srp_url = (srp_url or "").strip() or None
    mode = _as_mode(property_type)

    if handle is None:
        handle = DiscoveryRunHandle(city=city or srp_url or "", mode=mode or PropertyMode.RENT)
    if status_sink is not None:
        handle.sink = status_sink

    progress = _RunProgress()
    if not city and not srp_url:
        progress.error = DiagnosedError(
            DiscoveryWarning.NO_ZIPCODES, "input", "no city query, zip code or results URL supplied"
        )
    elif mode is None:
        progress.error = DiagnosedError(DiscoveryWarning.ERROR, "input", f"unknown property type {property_type!r}")
    else:
        try:
            await asyncio.wait_for(
                _pipeline(
                    progress,
                    handle,
                    city,
                    mode,
                    filters,
                    session_factory=session_factory,
                    client_factory=client_factory,
                    strategies=strategies,
                    max_candidates=max_candidates,
                    sniff_wait_ms=sniff_wait_ms,
                    srp_url=srp_url,
                ),
                timeout=run_budget_s,
            )
        except asyncio.TimeoutError:
            progress.timed_out = True
            progress.fail(DiagnosedError(DiscoveryWarning.ERROR, progress.phase, f"run budget of {run_budget_s}s exceeded"))
            log.warning("RUN budget exceeded for %s (%s) during %s", city, property_type, progress.phase)
        except Exception as e:
            progress.fail(classify_error(e, progress.phase))
            log.exception("RUN failed for %s (%s)", city, property_type)

    diagnostics = {
        "runId": handle.run_id,
        "city": city,
        "srpUrl": srp_url,
        "mode": mode.value if mode else str(property_type),
        "timedOut": progress.timed_out,
        "error": progress.error.as_dict() if progress.error else None,
        **progress.diagnostics,
    }
    result = assemble(
        progress.verified,
        filters,
        empty_warning=progress.error.warning if progress.error else DiscoveryWarning.OWNER_CARDS_EMPTY,
        duration_ms=int((time.monotonic() - started) * 1000),
        diagnostics=diagnostics,
    )
    handle.finish(result)
    log.info(
        "RUN done %s %s listings=%d warning=%s %dms",
        city,
        diagnostics["mode"],
        len(result.listings),
        result.warning.value if result.warning else None,
        result.duration_ms,
    )
    return result


def discover(
    city_or_zip: str,
    property_type="rent",
    filters: Optional[DiscoveryFilters] = None,
    **kwargs,
) -> DiscoveryResult:
    """
    Blocking entry point for callers without an event loop. Code already
    running inside a loop (an async request handler) awaits `run_discovery`.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(run_discovery(city_or_zip, property_type, filters, **kwargs))
    raise RuntimeError("discover() called from a running event loop; await run_discovery() instead")
