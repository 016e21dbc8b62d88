# tests/test_run_scraper.py
from __future__ import annotations

import asyncio
import csv
import json

import pytest

from backend.zillow import run_scraper
from backend.zillow.run_scraper import main, parse_args
from tests.utils import AUSTIN_RENTALS, OWNER_DETAIL_TEXT, Route, detail_url, search_api_body, search_record

pytestmark = pytest.mark.integration


def test_parse_args_defaults_and_filters():
    args = parse_args(["Austin, TX", "--zip", "78701", "--zip", "78702", "--mode", "both", "--max-price", "2000"])
    assert args.places == ["Austin, TX"]
    assert args.zips == ["78701", "78702"]
    assert args.mode == "both"
    assert args.max_price == 2000
    assert args.concurrency == 1
    assert not args.store


def test_parse_args_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        parse_args(["Austin, TX", "--mode", "lease"])


def test_main_writes_json(tmp_path, fake_sessions, fake_search, austin_routes, capsys):
    out = tmp_path / "out.json"
    results = asyncio.run(
        main(
            ["Austin, TX", "--output", str(out)],
            session_factory=fake_sessions(austin_routes()),
            client_factory=fake_search([AUSTIN_RENTALS]),
            sniff_wait_ms=0,
        )
    )
    assert len(results) == 1
    rows = json.loads(out.read_text(encoding="utf-8"))
    assert rows[0]["ownerName"] == "Jane Doe"
    assert rows[0]["city"] == "Austin, TX"
    assert "✅ Austin, TX: 1 listings" in capsys.readouterr().out


def test_main_writes_csv(tmp_path, fake_sessions, fake_search, austin_routes):
    out = tmp_path / "out.csv"
    asyncio.run(
        main(
            ["Austin, TX", "--output", str(out)],
            session_factory=fake_sessions(austin_routes()),
            client_factory=fake_search([AUSTIN_RENTALS]),
            sniff_wait_ms=0,
        )
    )
    with open(out, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["link"].endswith("123_zpid/")
    assert rows[0]["matchLabel"] == "PROPERTY_OWNER"


def test_main_without_places_reports_no_zipcodes(capsys):
    results = asyncio.run(main([]))
    assert results[0].warning.value == "no-zipcodes"
    assert "no-zipcodes" in capsys.readouterr().out


def test_store_flag_ingests_results(monkeypatch, fake_sessions, fake_search, austin_routes, fake_collection):
    col = fake_collection()
    monkeypatch.setattr(run_scraper.LeadStore, "from_env", classmethod(lambda cls: cls(col)))
    asyncio.run(
        main(
            ["Austin, TX", "--store"],
            session_factory=fake_sessions(austin_routes()),
            client_factory=fake_search([AUSTIN_RENTALS]),
            sniff_wait_ms=0,
        )
    )
    ops, _ = col.bulk_calls[0]
    assert len(ops) == 1


def test_srp_url_runs_once_without_a_place(fake_sessions, fake_search, capsys):
    srp = AUSTIN_RENTALS + "?searchQueryState=%7B%22pagination%22%3A%7B%22currentPage%22%3A1%7D%7D"
    routes = {srp: Route(html="<html></html>"), detail_url("123"): Route(text=OWNER_DETAIL_TEXT)}
    search = fake_search([AUSTIN_RENTALS])
    results = asyncio.run(
        main(
            ["--srp-url", srp],
            session_factory=fake_sessions(routes, api_pages={1: search_api_body([search_record("123")])}),
            client_factory=search,
            sniff_wait_ms=0,
        )
    )
    assert len(results) == 1
    assert len(results[0].listings) == 1
    assert search.queries == []
    assert f"✅ {srp}: 1 listings" in capsys.readouterr().out
