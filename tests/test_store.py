# tests/test_store.py
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pymongo import UpdateOne

from backend.py_models.listing import MatchLabel, PropertyMode, VerifiedListing
from backend.zillow.store import LeadStore, lead_document, make_hash
from tests.utils import detail_url

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _listing(zpid="123", price="$1,500/mo"):
    return VerifiedListing(
        address="1 Main St",
        price=price,
        owner_name="Jane Doe",
        phone="(512) 555-0100",
        link=detail_url(zpid),
        property_type=PropertyMode.RENT,
        match_label=MatchLabel.PROPERTY_OWNER,
    )


def test_lead_document_fields():
    doc = lead_document(_listing(), "Austin, TX")
    assert doc["hash"] == make_hash(detail_url("123") + "1 Main St")
    assert doc["priceNum"] == 1500
    assert doc["cityLower"] == "austin, tx"
    assert doc["matchLabel"] == "PROPERTY_OWNER"
    assert "status" not in doc


def test_ingest_upserts_by_hash_and_queues_new_rows(fake_collection):
    col = fake_collection()
    store = LeadStore(col, clock=lambda: NOW)
    assert store.ingest([_listing(), _listing("456")], city="Austin, TX") == 2

    ops, ordered = col.bulk_calls[0]
    assert ordered is False
    doc = lead_document(_listing(), "Austin, TX")
    assert ops[0] == UpdateOne(
        {"hash": doc["hash"]},
        {"$set": doc, "$setOnInsert": {"created_at": NOW.isoformat(), "status": "queued"}},
        upsert=True,
    )


def test_ingest_nothing_skips_the_database(fake_collection):
    col = fake_collection()
    assert LeadStore(col).ingest([]) == 0
    assert col.bulk_calls == []


def test_mark_upserts_by_url_hash(fake_collection):
    col = fake_collection()
    LeadStore(col, clock=lambda: NOW).mark(detail_url("123"), "contacted", reason="sent message")
    flt, update, upsert = col.update_calls[0]
    assert flt == {"hash": make_hash(detail_url("123"))}
    assert update["$set"]["status"] == "contacted"
    assert update["$set"]["notes"] == "sent message"
    assert update["$set"]["last_action_at"] == NOW.isoformat()
    assert update["$setOnInsert"] == {"created_at": NOW.isoformat()}
    assert upsert is True


def test_mark_requires_url_and_status(fake_collection):
    with pytest.raises(ValueError):
        LeadStore(fake_collection()).mark("", "queued")


def test_next_batch_query_and_projection(fake_collection):
    docs = [{"url": f"u{i}", "address": "a", "city": "Austin", "price": "1", "_id": i, "hash": "h"} for i in range(40)]
    col = fake_collection(docs)
    store = LeadStore(col, cooldown_days=90, clock=lambda: NOW)
    out = store.next_batch(count=100, city=" Austin ", price_max=2000)

    assert len(out) == 25
    assert set(out[0]) == {"url", "address", "city", "price", "beds", "baths", "source", "notes"}
    q = col.find_queries[0]
    assert q["status"] == "queued"
    assert q["cityLower"] == "austin"
    assert q["priceNum"] == {"$lte": 2000}
    assert q["$or"][1]["last_action_at"]["$lt"] == "2025-12-01T12:00:00+00:00"


def test_next_batch_without_filters(fake_collection):
    store = LeadStore(fake_collection(), clock=lambda: NOW)
    q = store.batch_query()
    assert "cityLower" not in q and "priceNum" not in q


def test_from_env_requires_uri():
    with pytest.raises(RuntimeError):
        LeadStore.from_env(uri=None)
