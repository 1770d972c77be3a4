#!/usr/bin/env python3
"""
Seed onboarded demo profiles into the document store.

  python scripts/seed_profiles.py --count 20
  python scripts/seed_profiles.py --count 5 --like uid_of_tester

With ``--like`` every seeded profile also likes the given user, so the
tester's next right-swipe on any of them produces a match.
"""

from __future__ import annotations

import argparse
import asyncio
import random
import sys
from datetime import date

sys.path.insert(0, ".")

from app.config import get_settings
from app.services.profile_service import ProfileService
from app.services.swipe_service import SwipeEngine
from app.store import create_store

FIRST_NAMES = [
    "Linh", "Minh", "An", "Sam", "Alex", "Jordan", "Mai", "Khoa",
    "Taylor", "Quinn", "Vy", "Huy", "Robin", "Casey", "Trang", "Nam",
]
CITIES = ["Ha Noi", "Ho Chi Minh City", "Da Nang", "Hue", "Can Tho"]
INTERESTS = ["hiking", "coffee", "music", "travel", "cooking", "books", "gaming", "yoga", "film"]
GENDERS = ["female", "male", "nonbinary"]


def _profile_fields(rng: random.Random, index: int) -> dict:
    year = date.today().year - rng.randint(19, 40)
    return {
        "displayName": f"{rng.choice(FIRST_NAMES)} {index}",
        "bio": "Seeded demo profile.",
        "gender": rng.choice(GENDERS),
        "birthday": f"{year}-{rng.randint(1, 12):02d}-{rng.randint(1, 28):02d}",
        "interests": rng.sample(INTERESTS, 3),
        "languages": ["vi", "en"],
        "location": {"city": rng.choice(CITIES)},
        "onboarded": True,
    }


async def seed(count: int, like: str | None, seed_value: int) -> None:
    settings = get_settings()
    store = create_store(settings)
    profiles = ProfileService(store, settings)
    swipes = SwipeEngine(store, settings)
    rng = random.Random(seed_value)

    try:
        for i in range(count):
            uid = f"seed_{seed_value}_{i:03d}"
            await profiles.upsert_on_login(uid, email=f"{uid}@example.com")
            await profiles.update_fields(uid, _profile_fields(rng, i))
            if like:
                await swipes.record_like(uid, like)
            print(f"  seeded {uid}")
    finally:
        await store.close()
    print(f"Seeded {count} profiles into the {settings.STORE_BACKEND} store.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo profiles.")
    parser.add_argument("--count", "-n", type=int, default=10, help="Number of profiles (default: 10).")
    parser.add_argument("--like", type=str, default=None, help="uid every seeded profile likes.")
    parser.add_argument("--seed", type=int, default=1, help="Random seed (default: 1).")
    args = parser.parse_args()
    asyncio.run(seed(args.count, args.like, args.seed))


if __name__ == "__main__":
    main()
