from __future__ import annotations
from typing import Iterable, Optional

CLOTHES_KEYWORDS = (
    "cloth", "clothes", "clothing", "apparel", "garment", "dress", "lehenga",
    "kurta", "kurti", "blouse", "saree", "shirt", "top", "pant", "skirt",
)

JEWELRY_KEYWORDS = (
    "jewel", "jewelry", "jewellery", "necklace", "earring", "ring", "bracelet",
    "bangle", "pendant", "anklet", "brooch", "chain", "accessory",
)

SHIPPING_CATEGORIES = ("clothes", "jewelry")
DEFAULT_SHIPPING_CATEGORY = "jewelry"


def normalize_shipping_category(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized if normalized in SHIPPING_CATEGORIES else None


def infer_shipping_category_from_text(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.lower()
    # clothes first: "kurta with chain work" ships as clothing
    if any(k in normalized for k in CLOTHES_KEYWORDS):
        return "clothes"
    if any(k in normalized for k in JEWELRY_KEYWORDS):
        return "jewelry"
    return None


def infer_shipping_category(product: dict, category: Optional[dict] = None) -> str:
    candidates = []
    if category:
        candidates += [category.get("slug_path"), category.get("name")]
    candidates += [product.get("category"), product.get("subcategory")]
    for candidate in candidates:
        inferred = infer_shipping_category_from_text(candidate)
        if inferred:
            return inferred
    return DEFAULT_SHIPPING_CATEGORY


def effective_shipping_category(items: Iterable) -> str:
    """A single clothing line makes the whole parcel ship as clothes."""
    for item in items:
        if getattr(item, "shipping_category", None) == "clothes":
            return "clothes"
    return DEFAULT_SHIPPING_CATEGORY
