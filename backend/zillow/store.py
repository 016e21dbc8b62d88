"""
Lead store: verified listings queued for outreach, kept in a `leads`
collection. Documents are keyed by a content hash so re-ingesting the same
listing updates it in place.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from pymongo import MongoClient, UpdateOne

from backend.py_models.listing import VerifiedListing
from backend.zillow.assemble import price_number
from backend.zillow.config import LEADS_COOLDOWN_DAYS, MONGO_DB, MONGO_URI

log = logging.getLogger("zillow")

MAX_BATCH = 25
BATCH_FIELDS = ("url", "address", "city", "price", "beds", "baths", "source", "notes")


def make_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def lead_document(listing: VerifiedListing, city: str = "") -> dict:
    """Flat lead row for one listing (without timestamps)."""
    return {
        "url": listing.link,
        "address": listing.address,
        "city": city,
        "price": listing.price,
        "beds": listing.beds,
        "baths": listing.baths,
        "ownerName": listing.owner_name,
        "phone": listing.phone,
        "propertyType": listing.property_type.value,
        "matchLabel": listing.match_label.value,
        "source": "zillow",
        "hash": make_hash(listing.link + listing.address),
        "priceNum": price_number(listing.price) or 0,
        "cityLower": (city or "").lower(),
    }


class LeadStore:
    def __init__(
        self,
        collection,
        *,
        cooldown_days: int = LEADS_COOLDOWN_DAYS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.col = collection
        self.cooldown_days = cooldown_days
        self.clock = clock

    @classmethod
    def from_env(cls, uri: Optional[str] = MONGO_URI, db: str = MONGO_DB) -> "LeadStore":
        if not uri:
            raise RuntimeError("MONGO_URI is not set; the lead store needs a MongoDB connection string.")
        client = MongoClient(uri)
        return cls(client[db]["leads"])

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    def ingest(self, listings: Iterable[VerifiedListing], city: str = "") -> int:
        """Bulk upsert; new rows start queued. Returns the number of ops sent."""
        now = self._now_iso()
        ops = []
        for l in listings:
            doc = lead_document(l, city)
            ops.append(
                UpdateOne(
                    {"hash": doc["hash"]},
                    {"$set": doc, "$setOnInsert": {"created_at": now, "status": "queued"}},
                    upsert=True,
                )
            )
        if not ops:
            return 0
        res = self.col.bulk_write(ops, ordered=False)
        log.info(
            "DB UPSERT BULK | ops=%d upserted=%d modified=%d matched=%d",
            len(ops),
            getattr(res, "upserted_count", 0),
            getattr(res, "modified_count", 0),
            getattr(res, "matched_count", 0),
        )
        return len(ops)

    def mark(
        self,
        url: str,
        status: str,
        *,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        address: Optional[str] = None,
        price: Optional[str] = None,
    ) -> None:
        if not url or not status:
            raise ValueError("url and status are required")
        now = self._now_iso()
        fields = {
            "url": url,
            "status": status,
            "notes": notes or reason or "",
            "last_action_at": now,
        }
        if address:
            fields["address"] = address
        if price:
            fields["price"] = price
        self.col.update_one(
            {"hash": make_hash(url)},
            {"$set": fields, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )

    def batch_query(self, city: str = "", price_max: int = 0) -> dict:
        since = (self.clock() - timedelta(days=self.cooldown_days)).isoformat()
        q = {
            "status": "queued",
            "$or": [{"last_action_at": {"$exists": False}}, {"last_action_at": {"$lt": since}}],
        }
        city = (city or "").strip().lower()
        if city:
            q["cityLower"] = city
        if price_max:
            q["priceNum"] = {"$lte": price_max}
        return q

    def next_batch(self, count: int = 10, city: str = "", price_max: int = 0) -> List[dict]:
        """Queued leads outside the cooldown window, at most MAX_BATCH."""
        limit = max(1, min(int(count or 10), MAX_BATCH))
        docs = self.col.find(self.batch_query(city, price_max)).limit(limit)
        return [{k: d.get(k) for k in BATCH_FIELDS} for d in docs]
