# tests/test_errors.py
from __future__ import annotations

from playwright.async_api import Error as PWError

from backend.py_models.listing import DiscoveryWarning
from backend.zillow.errors import (
    BlockedError,
    LaunchFailed,
    NavigationFailed,
    PhaseResult,
    classify_error,
    is_context_destroyed,
    looks_blocked,
)


def test_block_detection_by_status_and_body():
    assert looks_blocked(403)
    assert looks_blocked(429, "")
    assert looks_blocked(200, '<div id="px-captcha"></div>')
    assert looks_blocked(None, "Please verify you're a human")
    assert not looks_blocked(200, "<html>3 bd apartment, recaptcha-free listing page</html>")
    assert not looks_blocked(None, "")


def test_classify_maps_typed_errors():
    assert classify_error(BlockedError("x"), "landing").warning is DiscoveryWarning.BLOCKED
    assert classify_error(NavigationFailed("x"), "landing").warning is DiscoveryWarning.NO_ZILLOW_RESULT
    assert classify_error(LaunchFailed("x"), "launch").warning is DiscoveryWarning.ERROR
    assert classify_error(PWError("Timeout 60000ms exceeded"), "verify").warning is DiscoveryWarning.ERROR
    assert classify_error(RuntimeError("access to this page has been denied"), "x").warning is DiscoveryWarning.BLOCKED


def test_diagnosed_error_as_dict():
    d = classify_error(ValueError("bad"), "harvest").as_dict()
    assert d == {"warning": "error", "phase": "harvest", "message": "bad", "excType": "ValueError"}


def test_context_destroyed_detection():
    assert is_context_destroyed(PWError("Execution context was destroyed, most likely because of a navigation"))
    assert not is_context_destroyed(PWError("Timeout"))


def test_phase_result_failed():
    r = PhaseResult.failed(BlockedError("captcha"), "landing", tried=[1])
    assert not r.ok
    assert r.value is None
    assert r.diagnostics == {"tried": [1]}
    assert PhaseResult(value=3).ok
