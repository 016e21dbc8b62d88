import argparse
import asyncio
import csv
import json
import logging
from typing import List, Optional, Sequence

from backend.py_models.listing import DiscoveryFilters, DiscoveryResult, PropertyMode
from backend.zillow.engine import run_discovery
from backend.zillow.runner import discover_many
from backend.zillow.store import LeadStore

log = logging.getLogger("zillow")

CSV_FIELDS = ["city", "address", "price", "ownerName", "phone", "link", "propertyType", "matchLabel", "beds", "baths"]


def parse_args(argv: Optional[Sequence[str]] = None):
    p = argparse.ArgumentParser(description="Find owner-listed rentals and sales on Zillow.")
    p.add_argument("places", nargs="*", help='City queries, e.g. "Austin, TX" (zip codes also accepted)')
    p.add_argument("--mode", choices=[m.value for m in PropertyMode], default=PropertyMode.RENT.value)
    p.add_argument("--zip", dest="zips", action="append", default=[], help="Zip code; repeat for several")
    p.add_argument("--srp-url", help="Search-results URL to harvest directly instead of searching")
    p.add_argument("--min-beds", type=int, default=0)
    p.add_argument("--max-price", type=int, default=0)
    p.add_argument("--skip-no-agents", action="store_true", help="Drop listings without an owner label")
    p.add_argument("--skip-already-rented", action="store_true", help="Drop off-market listings")
    p.add_argument("--skip-duplicate-photos", action="store_true", help="Collapse by link+address+price")
    p.add_argument("--concurrency", type=int, default=1, help="Parallel browser sessions (max 3)")
    p.add_argument("--output", help="Optional path to save results as .json or .csv")
    p.add_argument("--store", action="store_true", help="Queue verified listings in the lead store (MONGO_URI)")
    p.add_argument("--print-details", action="store_true", help="Print each listing to stdout")
    p.add_argument("--verbose", action="store_true", help="Enable debug logging for the zillow engine")
    return p.parse_args(argv)


def result_rows(places: List[str], results: List[DiscoveryResult]) -> List[dict]:
    rows = []
    for place, res in zip(places, results):
        for l in res.listings:
            row = l.model_dump(mode="json", by_alias=True)
            row["city"] = place
            rows.append(row)
    return rows


def save_rows(rows: List[dict], out_path: str) -> bool:
    if out_path.lower().endswith(".json"):
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2, ensure_ascii=False, default=str)
    elif out_path.lower().endswith(".csv"):
        with open(out_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
            writer.writeheader()
            for r in rows:
                writer.writerow({k: r.get(k) for k in CSV_FIELDS})
    else:
        print(f"[warn] Unknown output format for '{out_path}'. Use .json or .csv")
        return False
    print(f"Saved {len(rows)} listings to {out_path}")
    return True


async def main(argv: Optional[Sequence[str]] = None, **run_kwargs) -> List[DiscoveryResult]:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    if args.verbose:
        log.setLevel(logging.DEBUG)

    mode = PropertyMode(args.mode)
    places = [p.strip() for p in list(args.places) + list(args.zips) if p and p.strip()]
    filters = DiscoveryFilters(
        min_bedrooms=args.min_beds,
        max_price=args.max_price,
        skip_no_agents=args.skip_no_agents,
        skip_already_rented=args.skip_already_rented,
        skip_duplicate_photos=args.skip_duplicate_photos,
    )

    if args.srp_url:
        # One run over the given results page; a place, if any, scopes the fallbacks
        results = [await run_discovery(places[0] if places else "", mode, filters, srp_url=args.srp_url, **run_kwargs)]
        places = [places[0] if places else args.srp_url]
    else:
        results = await discover_many(
            [(p, mode) for p in places],
            filters,
            concurrency=args.concurrency,
            **run_kwargs,
        )
    labels = places or ["(none)"]
    for place, res in zip(labels, results):
        if res.warning:
            print(f"❌ {place}: no listings ({res.warning.value}) in {res.duration_ms}ms")
        else:
            print(f"✅ {place}: {len(res.listings)} listings in {res.duration_ms}ms")

    if args.print_details:
        for place, res in zip(labels, results):
            for l in res.listings:
                owner = l.owner_name or "--"
                print(f"- {l.address} | {l.price or 'N/A'} | {owner} {l.phone} | {l.match_label.value} | {l.link}")

    rows = result_rows(places, results)
    if args.output:
        save_rows(rows, args.output)

    if args.store and places:
        store = LeadStore.from_env()
        for place, res in zip(places, results):
            store.ingest(res.listings, city=place)

    print(f"\nCollected {len(rows)} listing(s) across {len(places)} place(s).")
    return results


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
