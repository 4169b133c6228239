#!/usr/bin/env python3
"""
seed_crises.py — Populate MongoDB with sample crisis reports for local development.

Usage (from the repository root):
    python scripts/seed_crises.py               # replace existing seed data
    python scripts/seed_crises.py --append      # add without clearing first
    python scripts/seed_crises.py --trickle 10  # then insert one more every 10 s

Prerequisites:
    • MONGO_URI env var set (or .env file present); defaults to localhost
    • `pip install -e .`

--trickle is the easiest way to watch the /events stream work: open
`curl -N http://localhost:8000/events` in another terminal and an `update`
frame arrives within one poll interval of each insert.

What this script creates
────────────────────────
  crises   ← sample reports spread over the last few hours, including
             overlapping clusters (Manila, Istanbul) so the map dedup shows
  indexes  ← (created_at, _id) for the change feed, pubDate for snapshots
"""

import argparse
import asyncio
import random
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv

load_dotenv()

from motor.motor_asyncio import AsyncIOMotorClient  # noqa: E402

from crisis_monitor.core.config import settings  # noqa: E402

# (title, description, source, country, lat, lng)
_RAW = [
    ("Major earthquake strikes off Luzon coast", "Magnitude 7.1 tremor felt across Manila", "USGS", "Philippines", 14.60, 120.98),
    ("Flood warnings issued for Metro Manila", "Heavy rain expected through the weekend", "PAGASA", "Philippines", 14.65, 121.03),
    ("Aftershocks rattle Quezon City", "Residents advised to stay outdoors", "Reuters", "Philippines", 14.68, 121.05),
    ("Wildfire spreads near Athens suburbs", "Evacuation ordered for several villages", "AP", "Greece", 38.05, 23.80),
    ("Explosion reported at Istanbul port", "Emergency services at the scene", "Anadolu", "Turkey", 41.01, 28.97),
    ("Storm disrupts ferry services in Istanbul", "Bosphorus crossings suspended", "Daily Sabah", "Turkey", 41.05, 29.02),
    ("Hurricane makes landfall in Florida", "State of emergency declared for 12 counties", "NHC", "United States", 27.95, -82.46),
    ("Cholera outbreak confirmed in Kasai", "Health ministry requests support", "ReliefWeb", "DR Congo", -5.89, 22.42),
    ("Landslide blocks highway in Himachal", "Traffic diverted after heavy rain", "PTI", "India", 31.10, 77.17),
    ("Tornado touches down in Oklahoma", "Damage reported to homes near Moore", "NWS", "United States", 35.34, -97.49),
    ("Cyclone warning for Bangladesh coast", "Fishing boats told to return to port", "BMD", "Bangladesh", 22.34, 91.81),
    ("Road accident closes M1 near Leeds", "Multiple vehicles involved", "BBC", "United Kingdom", 53.80, -1.55),
    ("Border conflict escalates overnight", "Shelling reported in several towns", "Al Jazeera", "Sudan", 13.18, 30.22),
    ("Volcanic ash advisory lifted", "Flights resume at Catania", "ENAC", "Italy", 37.47, 15.07),
    ("Water supply restored in Nairobi estates", "Utility completes pipe repairs", "Nation", "Kenya", -1.29, 36.82),
    ("Tsunami alert cancelled for Hokkaido", "No significant sea level change observed", "JMA", "Japan", 43.06, 141.35),
    ("Power outage hits parts of Santiago", "Crews restoring service", "Emol", "Chile", -33.45, -70.67),
    ("Drought declared in southern Madagascar", "Food assistance scaled up", "WFP", "Madagascar", -25.03, 46.98),
]


def _make_doc(row, minutes_ago: float, now: datetime) -> dict:
    title, description, source, country, lat, lng = row
    created = now - timedelta(minutes=minutes_ago)
    return {
        "title": title,
        "description": description,
        "source": source,
        "link": f"https://example.com/crises/{abs(hash(title)) % 100000}",
        "pubDate": created - timedelta(minutes=random.randint(1, 90)),
        "created_at": created,
        "country": country,
        "lat": lat,
        "lng": lng,
    }


async def create_indexes(collection) -> None:
    await collection.create_index([("created_at", 1), ("_id", 1)])
    await collection.create_index([("pubDate", -1)])
    await collection.create_index([("country", 1)])
    print("  Indexes ensured")


async def seed(append: bool = False, trickle: float = 0.0) -> None:
    client = AsyncIOMotorClient(settings.mongo_uri, serverSelectionTimeoutMS=5000, tz_aware=True)
    collection = client[settings.mongo_db_name][settings.mongo_collection]

    if not append:
        print("Clearing existing crises…")
        result = await collection.delete_many({})
        print(f"  Deleted {result.deleted_count} existing documents")

    now = datetime.now(tz=timezone.utc)
    step = 240.0 / len(_RAW)
    docs = [_make_doc(row, minutes_ago=i * step + 1, now=now) for i, row in enumerate(_RAW)]
    result = await collection.insert_many(docs)
    print(f"\nInserted {len(result.inserted_ids)} crises")

    print("\nEnsuring indexes…")
    await create_indexes(collection)

    total = await collection.count_documents({})
    print(f"\n✓ Done — crises total: {total}")

    if trickle > 0:
        print(f"\nTrickling one new crisis every {trickle:g} s (Ctrl+C to stop)…")
        try:
            while True:
                await asyncio.sleep(trickle)
                doc = _make_doc(random.choice(_RAW), minutes_ago=0, now=datetime.now(tz=timezone.utc))
                await collection.insert_one(doc)
                print(f"  + {doc['title']}")
        except asyncio.CancelledError:
            pass

    client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed sample crises into MongoDB")
    parser.add_argument(
        "--append",
        action="store_true",
        help="Add crises without clearing existing data first",
    )
    parser.add_argument(
        "--trickle",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="After seeding, keep inserting one crisis every SECONDS",
    )
    args = parser.parse_args()

    print(f"Crisis Seeder  (db: {settings.mongo_db_name}.{settings.mongo_collection})")
    print(f"Mode: {'append' if args.append else 'replace'}\n")

    try:
        asyncio.run(seed(append=args.append, trickle=args.trickle))
    except KeyboardInterrupt:
        print("\nStopped")
