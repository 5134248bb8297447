"""Seed the default product categories.

Run with ``python seed_categories.py``. Existing slugs are left untouched, so
the script can be run repeatedly.
"""

import os
from datetime import datetime

from dotenv import load_dotenv
from pymongo import MongoClient

from catalog import DEFAULT_CATEGORIES, slugify_category_name

load_dotenv()


def seed_categories(categories_collection, categories=None):
    """Insert missing categories and return ``(created, skipped)`` counts."""
    created = 0
    skipped = 0
    last_category = categories_collection.find_one({}, sort=[("display_order", -1)])
    next_order = (last_category.get("display_order", 0) + 1) if last_category else 1

    for entry in categories or DEFAULT_CATEGORIES:
        slug = slugify_category_name(entry["name"])
        if categories_collection.find_one({"slug": slug}):
            skipped += 1
            continue
        timestamp = datetime.utcnow()
        categories_collection.insert_one(
            {
                "name": entry["name"],
                "slug": slug,
                "description": entry.get("description", ""),
                "image": entry.get("image", ""),
                "display_order": next_order,
                "is_active": True,
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
        next_order += 1
        created += 1
    return created, skipped


def main():
    client = MongoClient(os.getenv("MONGO_URI", "mongodb://localhost:27017/tbs_store"))
    try:
        db = client.get_default_database("tbs_store")
        created, skipped = seed_categories(db.categories)
        print(f"Seeded {created} categories ({skipped} already present).")
    finally:
        client.close()


if __name__ == "__main__":
    main()
