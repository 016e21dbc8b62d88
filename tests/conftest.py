# tests/conftest.py
from __future__ import annotations

import random

import pytest

from tests.utils import (
    AUSTIN_RENTALS,
    OWNER_DETAIL_TEXT,
    FakeCollection,
    FakePage,
    FakeSearch,
    FakeSessions,
    Route,
    detail_url,
    next_data_html,
    search_record,
)


@pytest.fixture(autouse=True)
def _seed():
    random.seed(1337)
    yield


@pytest.fixture
def fake_page():
    """Factory: FakePage(routes, **kwargs)."""

    def _factory(routes=None, **kwargs):
        return FakePage(routes, **kwargs)

    return _factory


@pytest.fixture
def fake_sessions():
    def _factory(routes=None, **page_kwargs):
        return FakeSessions(routes, **page_kwargs)

    return _factory


@pytest.fixture
def fake_search():
    def _factory(hits=(), status=200):
        return FakeSearch(hits, status=status)

    return _factory


@pytest.fixture
def fake_collection():
    def _factory(docs=None):
        return FakeCollection(docs)

    return _factory


@pytest.fixture
def austin_routes():
    """
    Landing page with one embedded listing plus its owner-listed detail page.
    Callers may override the detail route.
    """

    def _factory(detail_text: str = OWNER_DETAIL_TEXT, records=None):
        records = records if records is not None else [search_record("123")]
        return {
            AUSTIN_RENTALS: Route(html=next_data_html(records)),
            detail_url("123"): Route(html="<html><body>detail</body></html>", text=detail_text),
        }

    return _factory


@pytest.fixture
def fast_run():
    """Keyword arguments that keep engine runs instant under test."""
    return {"sniff_wait_ms": 0, "run_budget_s": 10}


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end runs over fake pages")
