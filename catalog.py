"""
Catalog, store-settings and admin data access.

Documents are stored in snake_case; everything returned to callers goes
through ``serialize_doc`` so ids are plain strings.
"""
from __future__ import annotations
import logging
import re
import unicodedata
from typing import Any, Optional

from pymongo import ASCENDING, DESCENDING
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import (
    create_document,
    delete_document,
    get_documents,
    serialize_doc,
    to_object_id,
    update_document,
    utcnow,
)
from errors import NotFoundError, PersistenceError, ValidationError
from schemas import (
    BulkCreateResult,
    BulkProductResult,
    Category,
    Coupon,
    HeroImage,
    Product,
    ShippingRule,
    StoreSettings,
    StoreSettingsUpdate,
)
from shipping import infer_shipping_category

logger = logging.getLogger(__name__)

SETTINGS_ID = "global"
NEWEST_FIRST = [("created_at", DESCENDING)]


# ------------------------- Slugs & category trees -------------------------
def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(c for c in normalized if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]+", "-", stripped).strip("-")


def build_slug_path(parent_slug_path: Optional[str], slug: str) -> str:
    return f"{parent_slug_path}/{slug}" if parent_slug_path else slug


def build_category_tree(categories: list[dict]) -> list[dict]:
    nodes = {c["id"]: {**c, "children": []} for c in categories}
    roots = []
    for c in categories:
        node = nodes[c["id"]]
        parent_id = c.get("parent_id")
        if parent_id:
            # orphans (parent deleted out from under them) are dropped
            if parent_id in nodes:
                nodes[parent_id]["children"].append(node)
        else:
            roots.append(node)

    def _sort(level: list[dict]) -> None:
        level.sort(key=lambda n: n.get("sort_order", 0))
        for n in level:
            _sort(n["children"])

    _sort(roots)
    return roots


def _path_entry(node: dict, full_path: str) -> dict:
    return {"id": node["id"], "name": node["name"], "slug_path": node["slug_path"], "full_path": full_path}


def flatten_category_tree(tree: list[dict], parent_path: str = "") -> list[dict]:
    result = []
    for node in tree:
        full_path = f"{parent_path} > {node['name']}" if parent_path else node["name"]
        result.append(_path_entry(node, full_path))
        result.extend(flatten_category_tree(node["children"], full_path))
    return result


def leaf_categories(tree: list[dict], parent_path: str = "") -> list[dict]:
    result = []
    for node in tree:
        full_path = f"{parent_path} > {node['name']}" if parent_path else node["name"]
        if node["children"]:
            result.extend(leaf_categories(node["children"], full_path))
        else:
            result.append(_path_entry(node, full_path))
    return result


def find_category_by_path(tree: list[dict], slug_path: str) -> Optional[dict]:
    for node in tree:
        if node["slug_path"] == slug_path:
            return node
        found = find_category_by_path(node["children"], slug_path)
        if found:
            return found
    return None


def descendant_ids(node: dict) -> list[str]:
    ids = [node["id"]]
    for child in node["children"]:
        ids.extend(descendant_ids(child))
    return ids


def breadcrumb(tree: list[dict], slug_path: str) -> list[dict]:
    trail = []
    level = tree
    current = ""
    for segment in slug_path.split("/"):
        current = build_slug_path(current, segment)
        found = next((n for n in level if n["slug_path"] == current), None)
        if found is None:
            break
        trail.append(found)
        level = found["children"]
    return trail


# ------------------------- Categories -------------------------
async def list_categories(db, visible_only: bool = False) -> list[dict]:
    filt = {"is_visible": True} if visible_only else {}
    return await get_documents(db, "category", filt, limit=0, sort=[("sort_order", ASCENDING)])


async def get_category_tree(db, visible_only: bool = False) -> list[dict]:
    return build_category_tree(await list_categories(db, visible_only))


async def get_category(db, category_id: str) -> Optional[dict]:
    oid = to_object_id(category_id)
    if oid is None:
        return None
    return serialize_doc(await db["category"].find_one({"_id": oid}))


async def _category_ids_under(db, slug_path: str) -> list[str]:
    prefix = re.escape(slug_path) + "/"
    docs = await get_documents(
        db, "category", {"$or": [{"slug_path": slug_path}, {"slug_path": {"$regex": f"^{prefix}"}}]}, limit=0
    )
    return [d["id"] for d in docs]


async def _resolve_parent_path(db, parent_id: Optional[str]) -> Optional[dict]:
    if not parent_id:
        return None
    parent = await get_category(db, parent_id)
    if parent is None:
        raise ValidationError("Parent category not found.", field="parent_id")
    return parent


async def _ensure_unique_sibling_slug(db, parent_id: Optional[str], slug: str, exclude_id=None) -> None:
    filt: dict[str, Any] = {"parent_id": parent_id or None, "slug": slug}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if await db["category"].find_one(filt):
        raise ValidationError("A category with this slug already exists at this level.", field="slug")


async def create_category(db, data: Category) -> dict:
    slug = data.slug or slugify(data.name)
    if not slug:
        raise ValidationError("Slug is required", field="slug")
    parent = await _resolve_parent_path(db, data.parent_id)
    await _ensure_unique_sibling_slug(db, data.parent_id, slug)
    doc = data.model_dump()
    doc.update(
        slug=slug,
        parent_id=data.parent_id or None,
        slug_path=build_slug_path(parent["slug_path"] if parent else None, slug),
    )
    try:
        return await create_document(db, "category", doc)
    except PersistenceError as e:
        if isinstance(e.__cause__, DuplicateKeyError):
            raise ValidationError("A category with this path already exists.", field="slug") from e
        raise


async def update_category(db, category_id: str, data: Category) -> dict:
    current = await get_category(db, category_id)
    if current is None:
        raise NotFoundError("Category not found.")
    if data.parent_id and data.parent_id == category_id:
        raise ValidationError("A category cannot be its own parent.", field="parent_id")
    parent = await _resolve_parent_path(db, data.parent_id)
    old_path = current["slug_path"]
    if parent and (parent["slug_path"] == old_path or parent["slug_path"].startswith(old_path + "/")):
        raise ValidationError("Cannot move a category under its own descendant.", field="parent_id")

    slug = data.slug or slugify(data.name)
    oid = to_object_id(category_id)
    await _ensure_unique_sibling_slug(db, data.parent_id, slug, exclude_id=oid)
    new_path = build_slug_path(parent["slug_path"] if parent else None, slug)

    changes = data.model_dump(exclude={"image_url"} if data.image_url is None else set())
    changes.update(slug=slug, slug_path=new_path, parent_id=data.parent_id or None)
    updated = await update_document(db, "category", oid, changes)

    if old_path != new_path:
        prefix = re.escape(old_path) + "/"
        descendants = await get_documents(db, "category", {"slug_path": {"$regex": f"^{prefix}"}}, limit=0)
        for desc in descendants:
            await update_document(
                db, "category", to_object_id(desc["id"]),
                {"slug_path": new_path + desc["slug_path"][len(old_path):]},
            )
    return updated


async def delete_category(db, category_id: str) -> None:
    oid = to_object_id(category_id)
    if oid is None:
        raise NotFoundError("Category not found.")
    try:
        children = await db["category"].count_documents({"parent_id": category_id})
        products = await db["product"].count_documents({"category_id": category_id})
    except PyMongoError as e:
        raise PersistenceError("Failed to delete category.") from e
    if children:
        raise ValidationError("Cannot delete a category that has subcategories. Move or delete them first.")
    if products:
        raise ValidationError(f"Cannot delete a category that has {products} product(s). Reassign products first.")
    if not await delete_document(db, "category", oid):
        raise NotFoundError("Category not found.")


async def reorder(db, collection_name: str, entries: list) -> None:
    for entry in entries:
        oid = to_object_id(entry.id)
        if oid is None or await update_document(db, collection_name, oid, {"sort_order": entry.sort_order}) is None:
            raise NotFoundError(f"Unknown {collection_name} id {entry.id}.")


async def reorder_categories(db, entries: list) -> None:
    await reorder(db, "category", entries)


# ------------------------- Products -------------------------
def effective_price(product: dict) -> float:
    if product.get("is_on_sale") and product.get("sale_price"):
        return float(product["sale_price"])
    return float(product.get("price", 0))


def ensure_combo_eligible(product: dict, field: str = "items") -> None:
    if not product.get("is_combo"):
        raise ValidationError(f"{product['name']} is not available in combo deals.", field=field)


async def _with_categories(db, products: list[dict]) -> list[dict]:
    """Attach the category and its inferred shipping category to each product."""
    categories = {c["id"]: c for c in await list_categories(db)}
    for p in products:
        category = categories.get(p.get("category_id"))
        p["shipping_category"] = infer_shipping_category(p, category)
        p["category_ref"] = category
        p["effective_price"] = effective_price(p)
    return products


def sort_products(products: list[dict], sort: Optional[str] = None) -> list[dict]:
    """Order a newest-first product list for the shop's sort menu."""
    if sort == "price-asc":
        return sorted(products, key=effective_price)
    if sort == "price-desc":
        return sorted(products, key=effective_price, reverse=True)
    if sort == "featured":
        # stable, so featured products keep their newest-first order
        return sorted(products, key=lambda p: not p.get("is_featured"))
    return products


async def list_products(
    db, q: Optional[str] = None, category_id: Optional[str] = None, sort: Optional[str] = None
) -> list[dict]:
    filt: dict[str, Any] = {}
    if q:
        # Simple case-insensitive name search
        filt["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category_id:
        filt["category_id"] = category_id
    docs = await get_documents(db, "product", filt, limit=0, sort=NEWEST_FIRST)
    return sort_products(await _with_categories(db, docs), sort)


async def list_featured_products(db) -> list[dict]:
    return await _with_categories(db, await get_documents(db, "product", {"is_featured": True}, limit=0, sort=NEWEST_FIRST))


async def list_combo_products(db) -> list[dict]:
    return await _with_categories(db, await get_documents(db, "product", {"is_combo": True}, limit=0, sort=NEWEST_FIRST))


async def list_products_by_category_path(db, slug_path: str, sort: Optional[str] = None) -> list[dict]:
    ids = await _category_ids_under(db, slug_path)
    if not ids:
        return []
    docs = await get_documents(db, "product", {"category_id": {"$in": ids}}, limit=0, sort=NEWEST_FIRST)
    return sort_products(await _with_categories(db, docs), sort)


async def list_sale_products(db, slug_path: Optional[str] = None) -> list[dict]:
    filt: dict[str, Any] = {"is_on_sale": True}
    if slug_path:
        ids = await _category_ids_under(db, slug_path)
        if ids:
            filt["category_id"] = {"$in": ids}
    return await _with_categories(db, await get_documents(db, "product", filt, limit=0, sort=NEWEST_FIRST))


async def get_product(db, product_id: str) -> Optional[dict]:
    oid = to_object_id(product_id)
    if oid is None:
        return None
    doc = serialize_doc(await db["product"].find_one({"_id": oid}))
    if doc is None:
        return None
    return (await _with_categories(db, [doc]))[0]


async def get_products_by_ids(db, product_ids: list[str]) -> dict[str, dict]:
    oids = [oid for oid in (to_object_id(pid) for pid in product_ids) if oid is not None]
    if not oids:
        return {}
    docs = await _with_categories(db, await get_documents(db, "product", {"_id": {"$in": oids}}, limit=0))
    return {d["id"]: d for d in docs}


async def _prepare_product(db, data: Product) -> dict:
    if await get_category(db, data.category_id) is None:
        raise ValidationError("Selected category does not exist.", field="category_id")
    if not data.images:
        raise ValidationError("At least one image is required.", field="images")
    doc = data.model_dump()
    if not data.is_on_sale:
        doc.update(sale_price=None, sale_percentage=None)
    elif data.sale_percentage is not None:
        doc["sale_price"] = round(data.price * (1 - data.sale_percentage / 100), 2)
    return doc


async def create_product(db, data: Product) -> dict:
    return await create_document(db, "product", await _prepare_product(db, data))


async def bulk_create_products(db, rows: list[dict]) -> BulkCreateResult:
    """Create products one row at a time; a bad row is reported, not fatal."""
    results = []
    for row in rows:
        result = BulkProductResult(success=False, name=str(row.get("name") or ""))
        try:
            await create_product(db, Product.model_validate(row))
            result.success = True
        except PydanticValidationError as e:
            result.error = "Validation failed: " + ", ".join(err["msg"] for err in e.errors())
        except ValidationError as e:
            result.error = e.message
        except PersistenceError:
            result.error = "Database error"
        results.append(result)
    failed = sum(1 for r in results if not r.success)
    message = f"Created {len(results) - failed} products successfully"
    if failed:
        message += f", {failed} failed"
    return BulkCreateResult(success=failed == 0, results=results, message=message + ".")


async def update_product(db, product_id: str, data: Product) -> dict:
    oid = to_object_id(product_id)
    doc = await _prepare_product(db, data)
    updated = await update_document(db, "product", oid, doc) if oid else None
    if updated is None:
        raise NotFoundError("Product not found.")
    return updated


async def delete_product(db, product_id: str) -> None:
    oid = to_object_id(product_id)
    if oid is None or not await delete_document(db, "product", oid):
        raise NotFoundError("Product not found.")


async def decrement_stock(db, product_id: str, quantity: int) -> None:
    oid = to_object_id(product_id)
    if oid is None:
        logger.warning("Skipping stock update for unknown product id %s", product_id)
        return
    try:
        await db["product"].update_one({"_id": oid}, {"$inc": {"stock": -quantity}})
    except PyMongoError as e:
        raise PersistenceError("Failed to update stock.") from e


# ------------------------- Coupons -------------------------
async def list_coupons(db) -> list[dict]:
    return await get_documents(db, "coupon", {}, limit=0, sort=NEWEST_FIRST)


async def get_coupon_by_code(db, code: str) -> Optional[dict]:
    try:
        doc = await db["coupon"].find_one({"code": code.strip().upper()})
    except PyMongoError as e:
        logger.exception("Database Error: coupon lookup failed")
        raise PersistenceError("Failed to validate coupon.") from e
    return serialize_doc(doc)


async def create_coupon(db, data: Coupon) -> dict:
    doc = data.model_dump(mode="python")
    doc["code"] = data.code.strip().upper()
    doc["discount_type"] = data.discount_type.value
    if data.discount_type.value == "PERCENTAGE" and data.discount_value > 100:
        raise ValidationError("Percentage discounts cannot exceed 100.", field="discount_value")
    try:
        return await create_document(db, "coupon", doc)
    except PersistenceError as e:
        if isinstance(e.__cause__, DuplicateKeyError):
            raise ValidationError("Failed to create coupon. Code might already exist.", field="code") from e
        raise


async def delete_coupon(db, coupon_id: str) -> None:
    oid = to_object_id(coupon_id)
    if oid is None or not await delete_document(db, "coupon", oid):
        raise NotFoundError("Coupon not found.")


# ------------------------- Shipping rules -------------------------
async def list_shipping_rules(db) -> list[dict]:
    return await get_documents(db, "shippingrule", {}, limit=0, sort=[("min_amount", ASCENDING)])


async def create_shipping_rule(db, rule: ShippingRule) -> dict:
    return await create_document(db, "shippingrule", rule.model_dump())


async def delete_shipping_rule(db, rule_id: str) -> None:
    oid = to_object_id(rule_id)
    if oid is None or not await delete_document(db, "shippingrule", oid):
        raise NotFoundError("Shipping rule not found.")


# ------------------------- Store settings -------------------------
async def get_store_settings(db) -> StoreSettings:
    try:
        doc = await db["settings"].find_one({"_id": SETTINGS_ID})
        if doc is None:
            defaults = StoreSettings()
            now = utcnow()
            await db["settings"].update_one(
                {"_id": SETTINGS_ID},
                {"$setOnInsert": {**defaults.model_dump(), "created_at": now, "updated_at": now}},
                upsert=True,
            )
            return defaults
    except PyMongoError as e:
        logger.exception("Database Error: settings lookup failed")
        raise PersistenceError("Failed to load store settings.") from e
    return StoreSettings.model_validate(doc)


async def update_store_settings(db, changes: StoreSettingsUpdate) -> StoreSettings:
    current = await get_store_settings(db)
    merged = current.model_copy(update=changes.model_dump(exclude_unset=True))
    if merged.estimated_delivery_min > merged.estimated_delivery_max:
        raise ValidationError("Minimum delivery days cannot exceed the maximum.", field="estimated_delivery_min")
    merged = StoreSettings.model_validate(merged.model_dump())
    await update_document(db, "settings", SETTINGS_ID, merged.model_dump())
    return merged


# ------------------------- Hero images -------------------------
async def list_hero_images(db, visible_only: bool = True) -> list[dict]:
    filt = {"is_visible": True} if visible_only else {}
    return await get_documents(db, "heroimage", filt, limit=0, sort=[("sort_order", ASCENDING)])


async def create_hero_image(db, image: HeroImage) -> dict:
    return await create_document(db, "heroimage", image.model_dump())


async def delete_hero_image(db, image_id: str) -> None:
    oid = to_object_id(image_id)
    if oid is None or not await delete_document(db, "heroimage", oid):
        raise NotFoundError("Hero image not found.")


async def reorder_hero_images(db, entries: list) -> None:
    await reorder(db, "heroimage", entries)
