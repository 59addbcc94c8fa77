import pytest

import catalog
from errors import NotFoundError, ValidationError
from schemas import Category, Coupon, HeroImage, Product, ReorderEntry, StoreSettingsUpdate

from conftest import IMAGE


def test_slugify():
    assert catalog.slugify("Boucles d'Oreilles Été") == "boucles-d-oreilles-ete"
    assert catalog.slugify("  Temple  Jewelry! ") == "temple-jewelry"


def test_tree_helpers():
    flat = [
        {"id": "2", "name": "Rings", "slug_path": "jewelry/rings", "parent_id": "1", "sort_order": 1},
        {"id": "1", "name": "Jewelry", "slug_path": "jewelry", "parent_id": None, "sort_order": 0},
        {"id": "3", "name": "Bangles", "slug_path": "jewelry/bangles", "parent_id": "1", "sort_order": 0},
        {"id": "4", "name": "Orphan", "slug_path": "gone/orphan", "parent_id": "99", "sort_order": 0},
    ]
    tree = catalog.build_category_tree(flat)
    assert [n["name"] for n in tree] == ["Jewelry"]
    assert [n["name"] for n in tree[0]["children"]] == ["Bangles", "Rings"]
    assert [c["full_path"] for c in catalog.leaf_categories(tree)] == ["Jewelry > Bangles", "Jewelry > Rings"]
    assert len(catalog.flatten_category_tree(tree)) == 3
    assert catalog.find_category_by_path(tree, "jewelry/rings")["id"] == "2"
    assert catalog.descendant_ids(tree[0]) == ["1", "3", "2"]
    assert [c["name"] for c in catalog.breadcrumb(tree, "jewelry/rings")] == ["Jewelry", "Rings"]


async def test_category_paths_follow_parents(db, sample):
    assert sample["necklaces"]["slug_path"] == "jewelry/necklaces"
    tree = await catalog.get_category_tree(db)
    assert [n["slug_path"] for n in tree] == ["jewelry", "clothing"]


async def test_sibling_slugs_must_be_unique(db, sample):
    with pytest.raises(ValidationError, match="already exists"):
        await catalog.create_category(db, Category(name="Necklaces", parent_id=sample["jewelry"]["id"]))
    # same slug under another parent is fine
    other = await catalog.create_category(db, Category(name="Necklaces", parent_id=sample["clothing"]["id"]))
    assert other["slug_path"] == "clothing/necklaces"


async def test_unknown_parent(db):
    with pytest.raises(ValidationError, match="Parent category not found"):
        await catalog.create_category(db, Category(name="Rings", parent_id="64b000000000000000000000"))


async def test_renaming_rewrites_descendant_paths(db, sample):
    jewelry = sample["jewelry"]
    await catalog.update_category(db, jewelry["id"], Category(name="Fine Jewelry"))
    necklaces = await catalog.get_category(db, sample["necklaces"]["id"])
    assert necklaces["slug_path"] == "fine-jewelry/necklaces"
    products = await catalog.list_products_by_category_path(db, "fine-jewelry")
    assert {p["name"] for p in products} == {"Kundan Necklace", "Pearl Choker", "Gold Jhumkas"}


async def test_cannot_move_under_own_descendant(db, sample):
    jewelry = sample["jewelry"]
    with pytest.raises(ValidationError, match="descendant"):
        await catalog.update_category(db, jewelry["id"], Category(name="Jewelry", parent_id=sample["necklaces"]["id"]))
    with pytest.raises(ValidationError, match="own parent"):
        await catalog.update_category(db, jewelry["id"], Category(name="Jewelry", parent_id=jewelry["id"]))


async def test_delete_guards(db, sample):
    with pytest.raises(ValidationError, match="subcategories"):
        await catalog.delete_category(db, sample["jewelry"]["id"])
    with pytest.raises(ValidationError, match="product"):
        await catalog.delete_category(db, sample["dresses"]["id"])
    empty = await catalog.create_category(db, Category(name="Anklets"))
    await catalog.delete_category(db, empty["id"])
    with pytest.raises(NotFoundError):
        await catalog.delete_category(db, empty["id"])


async def test_reorder_categories(db, sample):
    await catalog.reorder_categories(db, [
        ReorderEntry(id=sample["clothing"]["id"], sort_order=0),
        ReorderEntry(id=sample["jewelry"]["id"], sort_order=1),
    ])
    tree = await catalog.get_category_tree(db)
    assert [n["name"] for n in tree] == ["Clothing", "Jewelry"]


async def test_products_carry_category_and_prices(db, sample):
    choker = await catalog.get_product(db, sample["choker"]["id"])
    assert choker["sale_price"] == 30.0
    assert choker["effective_price"] == 30.0
    assert choker["shipping_category"] == "jewelry"
    assert choker["category_ref"]["slug_path"] == "jewelry/necklaces"
    dress = await catalog.get_product(db, sample["dress"]["id"])
    assert dress["shipping_category"] == "clothes"
    assert await catalog.get_product(db, "not-an-id") is None


async def test_product_queries(db, sample):
    assert {p["name"] for p in await catalog.list_products(db, q="neck")} == {"Kundan Necklace"}
    assert [p["name"] for p in await catalog.list_featured_products(db)] == ["Gold Jhumkas"]
    assert len(await catalog.list_combo_products(db)) == 3
    assert [p["name"] for p in await catalog.list_sale_products(db)] == ["Pearl Choker"]
    assert await catalog.list_sale_products(db, "clothing") == []
    assert await catalog.list_products_by_category_path(db, "nowhere") == []
    assert len(await catalog.list_products_by_category_path(db, "jewelry")) == 3


async def test_product_sorting(db, sample):
    by_price = await catalog.list_products(db, sort="price-asc")
    assert [p["effective_price"] for p in by_price] == [30.0, 30.0, 60.0, 120.0]
    assert (await catalog.list_products(db, sort="price-desc"))[0]["name"] == "Silk Dress"
    assert (await catalog.list_products(db, sort="featured"))[0]["name"] == "Gold Jhumkas"
    necklaces = await catalog.list_products_by_category_path(db, "jewelry/necklaces", sort="price-desc")
    assert [p["name"] for p in necklaces] == ["Kundan Necklace", "Pearl Choker"]


async def test_bulk_create_reports_each_row(db, sample):
    base = dict(name="Ring", description="Gold ring", price=10, images=[IMAGE], category_id=sample["jewelry"]["id"])
    result = await catalog.bulk_create_products(db, [
        base,
        {**base, "name": "Bangle", "price": -5},
        {**base, "name": "Anklet", "category_id": "64b000000000000000000000"},
    ])
    assert not result.success
    assert result.message == "Created 1 products successfully, 2 failed."
    assert [r.success for r in result.results] == [True, False, False]
    assert result.results[1].name == "Bangle"
    assert result.results[1].error.startswith("Validation failed: ")
    assert result.results[2].error == "Selected category does not exist."
    assert {p["name"] for p in await catalog.list_products(db, q="ring")} == {"Ring"}

    ok = await catalog.bulk_create_products(db, [{**base, "name": "Toe Ring"}])
    assert ok.success
    assert ok.message == "Created 1 products successfully."


async def test_product_validation(db, sample):
    base = dict(name="Ring", description="Gold ring", price=10, images=[IMAGE], category_id=sample["jewelry"]["id"])
    with pytest.raises(ValidationError, match="category"):
        await catalog.create_product(db, Product(**{**base, "category_id": "64b000000000000000000000"}))
    with pytest.raises(ValidationError, match="image"):
        await catalog.create_product(db, Product(**{**base, "images": []}))
    # sale fields are cleared when the product is not on sale
    ring = await catalog.create_product(db, Product(**base, sale_percentage=50))
    assert ring["sale_price"] is None


async def test_update_and_delete_product(db, sample):
    dress = sample["dress"]
    updated = await catalog.update_product(db, dress["id"], Product(
        name="Silk Dress", description="Now on sale", price=120, images=[IMAGE],
        category_id=sample["dresses"]["id"], is_on_sale=True, sale_price=99,
    ))
    assert catalog.effective_price(updated) == 99
    await catalog.delete_product(db, dress["id"])
    with pytest.raises(NotFoundError):
        await catalog.delete_product(db, dress["id"])


async def test_coupon_codes_are_unique_and_uppercase(db, sample):
    assert (await catalog.get_coupon_by_code(db, "save10"))["code"] == "SAVE10"
    with pytest.raises(ValidationError, match="Code might already exist"):
        await catalog.create_coupon(db, Coupon(code="SAVE10", discount_type="FIXED", discount_value=5))
    with pytest.raises(ValidationError, match="cannot exceed 100"):
        await catalog.create_coupon(db, Coupon(code="HALFOFF", discount_type="PERCENTAGE", discount_value=150))


async def test_store_settings_defaults_and_update(db):
    store = await catalog.get_store_settings(db)
    assert store.combo_price == 99.0
    assert store.allow_store_pickup is False

    updated = await catalog.update_store_settings(db, StoreSettingsUpdate(combo_price=120, allow_store_pickup=True))
    assert updated.combo_price == 120
    assert (await catalog.get_store_settings(db)).allow_store_pickup is True

    with pytest.raises(ValidationError, match="delivery"):
        await catalog.update_store_settings(db, StoreSettingsUpdate(estimated_delivery_min=9))


async def test_hero_images(db):
    first = await catalog.create_hero_image(db, HeroImage(image_url="a.jpg", sort_order=0))
    second = await catalog.create_hero_image(db, HeroImage(image_url="b.jpg", sort_order=1, is_visible=False))
    assert [h["image_url"] for h in await catalog.list_hero_images(db)] == ["a.jpg"]
    await catalog.reorder_hero_images(db, [ReorderEntry(id=first["id"], sort_order=5), ReorderEntry(id=second["id"], sort_order=0)])
    assert [h["image_url"] for h in await catalog.list_hero_images(db, visible_only=False)] == ["b.jpg", "a.jpg"]
    await catalog.delete_hero_image(db, second["id"])
    with pytest.raises(NotFoundError):
        await catalog.reorder_hero_images(db, [ReorderEntry(id=second["id"], sort_order=1)])


async def test_decrement_stock_skips_bad_ids(db, sample):
    await catalog.decrement_stock(db, "legacy-id", 1)
    await catalog.decrement_stock(db, sample["dress"]["id"], 3)
    assert (await catalog.get_product(db, sample["dress"]["id"]))["stock"] == 7
