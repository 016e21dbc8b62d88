import asyncio
import logging
import random
from typing import Iterable, List, Optional, Sequence, Tuple

from backend.py_models.listing import (
    DiscoveryFilters,
    DiscoveryResult,
    DiscoverySettings,
    PropertyMode,
)
from backend.zillow.config import DELAY_MAX_S, DELAY_MIN_S, MAX_POOL_SIZE
from backend.zillow.engine import run_discovery

log = logging.getLogger("zillow")

Unit = Tuple[str, PropertyMode]

# Start-up stagger for pooled runs so sessions don't open in lockstep
POOL_STAGGER_S = (0.3, 1.3)


def units_from_settings(settings: DiscoverySettings) -> List[Unit]:
    """One unit per zip code; a lone city query when no zips are set."""
    places = [z.strip() for z in settings.zip_codes if z and z.strip()]
    if not places and settings.city_query and settings.city_query.strip():
        places = [settings.city_query.strip()]
    seen = set()
    out = []
    for p in places:
        if p.lower() in seen:
            continue
        seen.add(p.lower())
        out.append((p, settings.property_type))
    return out


async def discover_many(
    units: Iterable[Unit],
    filters: Optional[DiscoveryFilters] = None,
    *,
    concurrency: int = 1,
    delay_range: Sequence[float] = (DELAY_MIN_S, DELAY_MAX_S),
    stagger_range: Sequence[float] = POOL_STAGGER_S,
    **run_kwargs,
) -> List[DiscoveryResult]:
    """
    Run each (city/zip, mode) unit and return one result per unit, in order.

    concurrency=1 runs strictly one after another with a randomized pause
    between units. Higher values use a semaphore-bounded pool, capped at
    MAX_POOL_SIZE. Runs never raise, so one unit's failure leaves the rest
    untouched.
    """
    units = list(units)
    if not units:
        # Surfaces no-zipcodes without launching anything
        return [await run_discovery("", filters=filters, **run_kwargs)]

    if concurrency <= 1:
        results = []
        for i, (place, mode) in enumerate(units):
            if i:
                pause = random.uniform(*delay_range)
                log.debug("sleeping %.1fs before %s", pause, place)
                await asyncio.sleep(pause)
            results.append(await run_discovery(place, mode, filters, **run_kwargs))
        return results

    size = min(concurrency, MAX_POOL_SIZE)
    sem = asyncio.Semaphore(size)
    log.info("pool of %d for %d units", size, len(units))

    async def bound(place: str, mode: PropertyMode) -> DiscoveryResult:
        async with sem:
            await asyncio.sleep(random.uniform(*stagger_range))
            return await run_discovery(place, mode, filters, **run_kwargs)

    return list(await asyncio.gather(*(bound(p, m) for p, m in units)))


def discover_all(settings: DiscoverySettings, *, concurrency: int = 1, **run_kwargs) -> List[DiscoveryResult]:
    return asyncio.run(
        discover_many(units_from_settings(settings), settings.filters(), concurrency=concurrency, **run_kwargs)
    )
