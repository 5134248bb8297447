"""Catalog helpers shared by the product, category, order and review routes."""

import json
import math
import os
import re
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

# Alias -> canonical category slug. Anything not listed normalizes to itself.
CATEGORY_ALIASES: Dict[str, str] = {
    "books": "books",
    "book": "books",
    "textbooks": "books",
    "textbook": "books",
    "stationary": "stationary",
    "stationery": "stationary",
    "office-supplies": "stationary",
    "office": "stationary",
    "supplies": "stationary",
    "gadgets": "gadgets",
    "gadget": "gadgets",
    "electronics": "gadgets",
    "electronic": "gadgets",
    "tech": "gadgets",
    "technology": "gadgets",
}

DEFAULT_CATEGORIES = [
    {"name": "Books", "description": "Books and reading materials"},
    {"name": "Stationary", "description": "Office and school supplies"},
    {"name": "Gadgets", "description": "Kitchen and household gadgets"},
    {"name": "Water Bottles & Lunch Boxes", "description": "Water bottles and lunch boxes"},
    {"name": "Novels", "description": "Fiction and non-fiction novels"},
    {"name": "Course Books", "description": "Educational course books and textbooks"},
    {"name": "School bags", "description": "School bags and backpacks"},
    {"name": "Ladies bags", "description": "Ladies handbags and purses"},
    {"name": "Abayas", "description": "Traditional abayas and modest wear"},
    {"name": "Newborn", "description": "Baby and newborn items"},
    {"name": "Household", "description": "Household items and essentials"},
    {"name": "Lunchbox/water bottle", "description": "Lunch boxes and water bottles"},
    {"name": "Customized items", "description": "Customized and personalized items"},
]


def normalize_category(value: Optional[str]) -> str:
    if not value:
        return ""
    lowered = str(value).strip().lower()
    return CATEGORY_ALIASES.get(lowered, lowered)


def categories_match(first: Optional[str], second: Optional[str]) -> bool:
    return normalize_category(first) == normalize_category(second)


def canonical_categories() -> List[str]:
    seen: List[str] = []
    for value in CATEGORY_ALIASES.values():
        if value not in seen:
            seen.append(value)
    return seen


def slugify_category_name(value: Optional[str]) -> str:
    condensed = " ".join(str(value or "").split()).lower()
    return re.sub(r"[^a-z0-9]+", "-", condensed).strip("-")


def parse_json_list(value):
    """Accept a list, a JSON array string or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value]
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            value = ""
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return []
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass
        if "," in candidate:
            return [
                item.strip() for item in candidate.split(",") if item and item.strip()
            ]
        return [candidate]
    return []


def normalize_sizes_input(raw_value):
    """Return ``(sizes, error)`` where sizes is a list of ``{"size", "price"}``."""
    if raw_value is None:
        return [], None
    if isinstance(raw_value, str):
        stripped = raw_value.strip()
        if not stripped or stripped == "[]":
            return [], None
        try:
            raw_value = json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            return None, "Sizes must be a JSON list of {size, price} entries."
    if not isinstance(raw_value, list):
        return None, "Sizes must be a JSON list of {size, price} entries."

    sizes: List[Dict] = []
    seen: Set[str] = set()
    for entry in raw_value:
        if not isinstance(entry, dict):
            continue
        label = str(entry.get("size") or "").strip()
        if not label or label.lower() in seen:
            continue
        price = safe_float(entry.get("price"), None)
        if price is None or price < 0:
            return None, f'Size "{label}" needs a valid price.'
        seen.add(label.lower())
        sizes.append({"size": label, "price": round(price, 2)})
    return sizes, None


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_bool(value, default=None):
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def image_filename_from_url(url: Optional[str], route_prefix: str = "/images/") -> Optional[str]:
    """Return the stored file name behind an image URL served by this API."""
    if not url:
        return None
    path = urlparse(str(url)).path or ""
    if route_prefix not in path:
        return None
    filename = path.split(route_prefix, 1)[1]
    if not filename or "/" in filename:
        return None
    return filename


def product_image_urls(product_document) -> List[str]:
    urls: List[str] = []
    if not product_document:
        return urls
    if product_document.get("image"):
        urls.append(str(product_document["image"]))
    for url in product_document.get("additional_images") or []:
        if url:
            urls.append(str(url))
    for review in product_document.get("reviews") or []:
        for url in review.get("images") or []:
            if url:
                urls.append(str(url))
    return urls


def collect_referenced_filenames(product_documents: Iterable[Dict]) -> Set[str]:
    referenced: Set[str] = set()
    for document in product_documents:
        for url in product_image_urls(document):
            filename = image_filename_from_url(url)
            if filename:
                referenced.add(filename)
    return referenced


def find_orphaned_files(upload_folder: str, referenced: Set[str]) -> List[Dict]:
    if not os.path.isdir(upload_folder):
        return []
    orphans: List[Dict] = []
    for entry in sorted(os.scandir(upload_folder), key=lambda item: item.name):
        if not entry.is_file() or entry.name.startswith("."):
            continue
        if entry.name in referenced:
            continue
        orphans.append({"filename": entry.name, "size": entry.stat().st_size})
    return orphans


def compute_rating_summary(reviews) -> Dict[str, float]:
    ratings = [
        safe_float(review.get("rating"), 0.0)
        for review in reviews or []
        if isinstance(review, dict)
    ]
    if not ratings:
        return {"average_rating": 0, "num_reviews": 0}
    return {
        "average_rating": round(sum(ratings) / len(ratings), 1),
        "num_reviews": len(ratings),
    }
