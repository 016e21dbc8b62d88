"""
Typed errors and phase results for the discovery engine.

Every phase (landing, harvest, verification) catches at its own boundary
and hands back a PhaseResult; the engine turns the first terminal
DiagnosedError into a DiscoveryWarning on the result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from backend.py_models.listing import DiscoveryWarning

T = TypeVar("T")


class DiscoveryError(RuntimeError):
    """Base class for engine failures."""

    warning = DiscoveryWarning.ERROR


class InvalidInput(DiscoveryError):
    """Neither a city query nor zip codes were supplied."""

    warning = DiscoveryWarning.NO_ZIPCODES


class LaunchFailed(DiscoveryError):
    """The browser could not be started after all retries."""


class NavigationFailed(DiscoveryError):
    """A page could not be loaded within its timeout."""

    warning = DiscoveryWarning.NO_ZILLOW_RESULT


class BlockedError(DiscoveryError):
    """A rate-limit response or bot challenge was served instead of content."""

    warning = DiscoveryWarning.BLOCKED


class ContextDestroyed(DiscoveryError):
    """Client-side navigation tore down the page while we were evaluating."""


# Markers of an interstitial challenge; kept specific so listing copy does not trip it
_CHALLENGE_PATTERN = re.compile(
    r"(px-captcha|press\s*&(?:amp;)?\s*hold|press\s+and\s+hold|"
    r"please verify you(?:'|&#39;|’)re a human|access to this page has been denied|"
    r"captcha-delivery)",
    re.IGNORECASE,
)
BLOCK_STATUSES = frozenset({403, 429})

_CONTEXT_DESTROYED = re.compile(
    r"(execution context was destroyed|context was destroyed|frame was detached)",
    re.IGNORECASE,
)


def looks_blocked(status: Optional[int] = None, body: str = "") -> bool:
    """True when a status code or page body indicates a bot challenge."""
    if status is not None and status in BLOCK_STATUSES:
        return True
    return bool(body) and bool(_CHALLENGE_PATTERN.search(body))


def is_context_destroyed(exc: BaseException) -> bool:
    if isinstance(exc, ContextDestroyed):
        return True
    return bool(_CONTEXT_DESTROYED.search(str(exc)))


@dataclass(frozen=True)
class DiagnosedError:
    warning: DiscoveryWarning
    phase: str
    message: str
    exc_type: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "warning": self.warning.value,
            "phase": self.phase,
            "message": self.message,
            "excType": self.exc_type,
        }


def classify_error(exc: BaseException, phase: str) -> DiagnosedError:
    """Map any exception raised inside a phase onto the warning taxonomy."""
    if isinstance(exc, DiscoveryError):
        warning = exc.warning
    elif _CHALLENGE_PATTERN.search(str(exc)):
        warning = DiscoveryWarning.BLOCKED
    else:
        warning = DiscoveryWarning.ERROR
    return DiagnosedError(
        warning=warning,
        phase=phase,
        message=str(exc)[:500],
        exc_type=type(exc).__name__,
    )


@dataclass
class PhaseResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[DiagnosedError] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, exc: BaseException, phase: str, **diagnostics: Any) -> "PhaseResult[T]":
        return cls(value=None, error=classify_error(exc, phase), diagnostics=dict(diagnostics))


__all__ = [
    "DiscoveryError",
    "InvalidInput",
    "LaunchFailed",
    "NavigationFailed",
    "BlockedError",
    "ContextDestroyed",
    "BLOCK_STATUSES",
    "looks_blocked",
    "is_context_destroyed",
    "DiagnosedError",
    "classify_error",
    "PhaseResult",
]
