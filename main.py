from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import catalog
import checkout as checkout_flow
import orders
import pricing
from cart import Cart
from config import settings
from database import close_db, ensure_indexes, get_db
from errors import (
    ExternalServiceError,
    NotFoundError,
    SignatureVerificationError,
    StorefrontError,
    ValidationError,
)
from mailer import get_mailer
from payments import get_gateway
from schemas import (
    BulkCreateResult,
    BulkProductRequest,
    CartItem,
    CartSummary,
    Category,
    CheckoutRequest,
    CheckoutSession,
    ComboRequest,
    ContactMessage,
    Coupon,
    CouponCheck,
    HeroImage,
    Order,
    OrderStatus,
    OrderStatusUpdate,
    PriceBreakdown,
    Product,
    ProductSort,
    QuoteRequest,
    ReorderEntry,
    ShippingRule,
    StoreSettings,
    StoreSettingsUpdate,
)
from shipping import effective_shipping_category

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await ensure_indexes(await get_db())
    except Exception:
        # the API still serves errors cleanly without a database; indexes are retried next start
        logger.exception("Could not create database indexes")
    yield
    close_db()


app = FastAPI(title="Royals and Radiant API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def status_for(error: StorefrontError) -> int:
    if isinstance(error, (ValidationError, SignatureVerificationError)):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ExternalServiceError):
        return 502
    return 500


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    body = {"detail": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    return JSONResponse(status_code=status_for(exc), content=body)


async def get_database():
    return await get_db()


async def get_store_settings(db=Depends(get_database)) -> StoreSettings:
    return await catalog.get_store_settings(db)


@app.get("/")
async def root():
    return {"message": "Royals and Radiant Backend Running"}


@app.get("/api/health")
async def health(db=Depends(get_database)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": settings.DATABASE_NAME,
        "stripe": "✅ Set" if settings.STRIPE_SECRET_KEY else "❌ Not Set",
        "mail": "✅ Set" if settings.RESEND_API_KEY else "❌ Not Set",
        "collections": [],
    }
    try:
        collections = await db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ------------------------- Catalog -------------------------
@app.get("/api/products")
async def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None, description="Category slug path, includes subcategories"),
    sort: Optional[ProductSort] = Query(None),
    db=Depends(get_database),
):
    if category:
        products = await catalog.list_products_by_category_path(db, category, sort)
        if q:
            products = [p for p in products if q.lower() in p["name"].lower()]
        return products
    return await catalog.list_products(db, q=q, sort=sort)


@app.get("/api/products/featured")
async def featured_products(db=Depends(get_database)):
    return await catalog.list_featured_products(db)


@app.get("/api/products/sale")
async def sale_products(category: Optional[str] = Query(None), db=Depends(get_database)):
    return await catalog.list_sale_products(db, category)


@app.get("/api/products/combos")
async def combo_products(db=Depends(get_database), store: StoreSettings = Depends(get_store_settings)):
    return {"combo_price": store.combo_price, "products": await catalog.list_combo_products(db)}


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, db=Depends(get_database)):
    product = await catalog.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/api/categories")
async def category_tree(db=Depends(get_database)):
    return await catalog.get_category_tree(db, visible_only=True)


@app.get("/api/categories/{slug_path:path}/products")
async def category_products(slug_path: str, sort: Optional[ProductSort] = Query(None), db=Depends(get_database)):
    tree = await catalog.get_category_tree(db, visible_only=True)
    node = catalog.find_category_by_path(tree, slug_path)
    if node is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return {
        "category": {k: v for k, v in node.items() if k != "children"},
        "subcategories": node["children"],
        "breadcrumb": [{"name": c["name"], "slug_path": c["slug_path"]} for c in catalog.breadcrumb(tree, slug_path)],
        "products": await catalog.list_products_by_category_path(db, slug_path, sort),
    }


@app.get("/api/hero-images")
async def hero_images(db=Depends(get_database)):
    return await catalog.list_hero_images(db, visible_only=True)


@app.get("/api/store-settings", response_model=StoreSettings)
async def store_settings(store: StoreSettings = Depends(get_store_settings)):
    return store


# ------------------------- Cart / pricing -------------------------
def summarize(cart: Cart) -> CartSummary:
    return CartSummary(
        items=list(cart.items),
        combos=cart.combo_groups(),
        item_count=cart.item_count,
        total=round(cart.total, 2),
    )


@app.post("/api/cart/summary", response_model=CartSummary)
async def cart_summary(items: list[CartItem]):
    cart = Cart()
    for item in items:
        cart = cart.add_item(item)
    return summarize(cart)


@app.post("/api/cart/combo", response_model=CartSummary)
async def add_combo(
    payload: ComboRequest,
    db=Depends(get_database),
    store: StoreSettings = Depends(get_store_settings),
):
    found = await catalog.get_products_by_ids(db, payload.product_ids)
    missing = [pid for pid in payload.product_ids if pid not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f"Invalid product {missing[0]}")
    products = [found[pid] for pid in payload.product_ids]
    for product in products:
        catalog.ensure_combo_eligible(product, field="product_ids")
    return summarize(Cart(payload.items).add_combo(products, store.combo_price))


@app.post("/api/coupons/validate")
async def validate_coupon(payload: CouponCheck, db=Depends(get_database)):
    coupon = await pricing.lookup_coupon(db, payload.code, payload.order_amount)
    return {
        "valid": True,
        "code": coupon.code,
        "discount_type": coupon.discount_type.value,
        "discount_value": coupon.discount_value,
        "discount": pricing.compute_discount(payload.order_amount, coupon),
    }


@app.post("/api/pricing/quote", response_model=PriceBreakdown)
async def price_quote(
    payload: QuoteRequest,
    db=Depends(get_database),
    store: StoreSettings = Depends(get_store_settings),
):
    # Recalculate totals server-side for integrity
    if payload.is_pickup and not store.allow_store_pickup:
        raise ValidationError("Store pickup is not available.", field="is_pickup")
    items = await checkout_flow.reprice_items(db, payload.items, store)
    selection = pricing.ShippingSelection(payload.is_pickup, effective_shipping_category(items))
    return await pricing.quote(db, Cart(items).total, payload.coupon_code, selection)


# ------------------------- Checkout & orders -------------------------
@app.post("/api/checkout", response_model=CheckoutSession)
async def create_checkout(
    payload: CheckoutRequest,
    db=Depends(get_database),
    gateway=Depends(get_gateway),
    store: StoreSettings = Depends(get_store_settings),
):
    return await checkout_flow.checkout(db, gateway, payload, store)


@app.get("/api/orders/by-session/{session_id}", response_model=Order)
async def order_by_session(session_id: str, db=Depends(get_database)):
    order = await orders.get_order_by_session_id(db, session_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db=Depends(get_database),
    gateway=Depends(get_gateway),
    mailer=Depends(get_mailer),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        result = await orders.handle_webhook(db, gateway, mailer, payload, signature)
    except (ValidationError, SignatureVerificationError) as e:
        logger.warning("Webhook rejected: %s", e.message)
        raise HTTPException(status_code=400, detail="Webhook handler failed")
    except StorefrontError as e:
        # 5xx makes Stripe redeliver the event later
        logger.error("Webhook failed: %s", e.message)
        raise HTTPException(status_code=500, detail="Webhook handler failed")
    return {"received": result.received, "order_id": result.order_id, "created": result.created}


@app.post("/api/contact")
async def contact(payload: ContactMessage, mailer=Depends(get_mailer)):
    try:
        await mailer.send_contact_message(payload, settings.CONTACT_INBOX)
    except ExternalServiceError:
        logger.exception("Contact form delivery failed")
        raise HTTPException(status_code=502, detail="Failed to send message. Please try again later.")
    return {"success": True, "message": "Thank you for your message! We'll get back to you soon."}


# ------------------------- Admin -------------------------
@app.get("/api/admin/products")
async def admin_products(db=Depends(get_database)):
    return await catalog.list_products(db)


@app.post("/api/admin/products", status_code=201)
async def admin_create_product(payload: Product, db=Depends(get_database)):
    return await catalog.create_product(db, payload)


@app.post("/api/admin/products/bulk", response_model=BulkCreateResult)
async def admin_bulk_create_products(payload: BulkProductRequest, db=Depends(get_database)):
    return await catalog.bulk_create_products(db, payload.products)


@app.put("/api/admin/products/{product_id}")
async def admin_update_product(product_id: str, payload: Product, db=Depends(get_database)):
    return await catalog.update_product(db, product_id, payload)


@app.delete("/api/admin/products/{product_id}", status_code=204)
async def admin_delete_product(product_id: str, db=Depends(get_database)):
    await catalog.delete_product(db, product_id)


@app.get("/api/admin/categories")
async def admin_categories(db=Depends(get_database)):
    tree = await catalog.get_category_tree(db)
    return {"tree": tree, "flat": catalog.flatten_category_tree(tree), "leaves": catalog.leaf_categories(tree)}


@app.post("/api/admin/categories", status_code=201)
async def admin_create_category(payload: Category, db=Depends(get_database)):
    return await catalog.create_category(db, payload)


@app.put("/api/admin/categories/{category_id}")
async def admin_update_category(category_id: str, payload: Category, db=Depends(get_database)):
    return await catalog.update_category(db, category_id, payload)


@app.delete("/api/admin/categories/{category_id}", status_code=204)
async def admin_delete_category(category_id: str, db=Depends(get_database)):
    await catalog.delete_category(db, category_id)


@app.post("/api/admin/categories/reorder")
async def admin_reorder_categories(payload: list[ReorderEntry], db=Depends(get_database)):
    await catalog.reorder_categories(db, payload)
    return {"success": True}


@app.get("/api/admin/coupons")
async def admin_coupons(db=Depends(get_database)):
    return await catalog.list_coupons(db)


@app.post("/api/admin/coupons", status_code=201)
async def admin_create_coupon(payload: Coupon, db=Depends(get_database)):
    return await catalog.create_coupon(db, payload)


@app.delete("/api/admin/coupons/{coupon_id}", status_code=204)
async def admin_delete_coupon(coupon_id: str, db=Depends(get_database)):
    await catalog.delete_coupon(db, coupon_id)


@app.get("/api/admin/shipping-rules")
async def admin_shipping_rules(db=Depends(get_database)):
    return await catalog.list_shipping_rules(db)


@app.post("/api/admin/shipping-rules", status_code=201)
async def admin_create_shipping_rule(payload: ShippingRule, db=Depends(get_database)):
    return await catalog.create_shipping_rule(db, payload)


@app.delete("/api/admin/shipping-rules/{rule_id}", status_code=204)
async def admin_delete_shipping_rule(rule_id: str, db=Depends(get_database)):
    await catalog.delete_shipping_rule(db, rule_id)


@app.put("/api/admin/settings", response_model=StoreSettings)
async def admin_update_settings(payload: StoreSettingsUpdate, db=Depends(get_database)):
    return await catalog.update_store_settings(db, payload)


@app.get("/api/admin/hero-images")
async def admin_hero_images(db=Depends(get_database)):
    return await catalog.list_hero_images(db, visible_only=False)


@app.post("/api/admin/hero-images", status_code=201)
async def admin_create_hero_image(payload: HeroImage, db=Depends(get_database)):
    return await catalog.create_hero_image(db, payload)


@app.delete("/api/admin/hero-images/{image_id}", status_code=204)
async def admin_delete_hero_image(image_id: str, db=Depends(get_database)):
    await catalog.delete_hero_image(db, image_id)


@app.post("/api/admin/hero-images/reorder")
async def admin_reorder_hero_images(payload: list[ReorderEntry], db=Depends(get_database)):
    await catalog.reorder_hero_images(db, payload)
    return {"success": True}


@app.get("/api/admin/orders", response_model=list[Order])
async def admin_orders(status: Optional[OrderStatus] = Query(None), db=Depends(get_database)):
    return await orders.list_orders(db, status)


@app.patch("/api/admin/orders/{order_id}/status", response_model=Order)
async def admin_update_order_status(order_id: str, payload: OrderStatusUpdate, db=Depends(get_database)):
    return await orders.update_order_status(db, order_id, payload.status)


# ------------------------- Demo data -------------------------
SEED_CATEGORIES: list[dict] = [
    {"name": "Necklaces", "children": ["Kundan", "Temple Jewelry"]},
    {"name": "Earrings", "children": ["Jhumkas", "Chandbalis"]},
    {"name": "Dresses", "children": ["Lehengas", "Kurtis"]},
]

SEED_PRODUCTS: list[dict] = [
    {"name": "Kundan Bridal Necklace", "category": "necklaces/kundan", "price": 189.0, "stock": 12, "is_featured": True, "is_combo": True,
     "image": "https://images.unsplash.com/photo-1599643478518-a784e5dc4c8f?q=80&w=1200&auto=format&fit=crop"},
    {"name": "Lakshmi Temple Haar", "category": "necklaces/temple-jewelry", "price": 149.0, "stock": 8, "is_combo": True,
     "image": "https://images.unsplash.com/photo-1611591437281-460bfbe1220a?q=80&w=1200&auto=format&fit=crop"},
    {"name": "Pearl Drop Jhumkas", "category": "earrings/jhumkas", "price": 59.0, "stock": 30, "is_on_sale": True, "sale_percentage": 20, "is_combo": True,
     "image": "https://images.unsplash.com/photo-1535632066927-ab7c9ab60908?q=80&w=1200&auto=format&fit=crop"},
    {"name": "Polki Chandbalis", "category": "earrings/chandbalis", "price": 79.0, "stock": 20, "is_featured": True,
     "image": "https://images.unsplash.com/photo-1630019852942-f89202989a59?q=80&w=1200&auto=format&fit=crop"},
    {"name": "Banarasi Silk Lehenga", "category": "dresses/lehengas", "price": 349.0, "stock": 5,
     "image": "https://images.unsplash.com/photo-1583391733956-6c78276477e2?q=80&w=1200&auto=format&fit=crop"},
]


class SeedResponse(BaseModel):
    inserted: int
    categories: int = 0


@app.post("/api/admin/seed", response_model=SeedResponse)
async def seed_catalog(db=Depends(get_database)):
    # Insert only if the catalog is empty
    if await db["product"].count_documents({}) or await db["category"].count_documents({}):
        return SeedResponse(inserted=0)

    paths: dict[str, str] = {}
    for top in SEED_CATEGORIES:
        parent = await catalog.create_category(db, Category(name=top["name"]))
        paths[parent["slug_path"]] = parent["id"]
        for child_name in top["children"]:
            child = await catalog.create_category(db, Category(name=child_name, parent_id=parent["id"]))
            paths[child["slug_path"]] = child["id"]

    for p in SEED_PRODUCTS:
        await catalog.create_product(db, Product(
            name=p["name"],
            description=f"Handcrafted {p['name'].lower()}.",
            price=p["price"],
            images=[p["image"]],
            category_id=paths[p["category"]],
            stock=p["stock"],
            is_on_sale=p.get("is_on_sale", False),
            sale_percentage=p.get("sale_percentage"),
            is_featured=p.get("is_featured", False),
            is_combo=p.get("is_combo", False),
        ))

    for rule in (ShippingRule(min_amount=0, max_amount=49.99, price=7.99), ShippingRule(min_amount=50, price=0)):
        await catalog.create_shipping_rule(db, rule)
    await catalog.create_coupon(db, Coupon(code="SAVE10", discount_type="PERCENTAGE", discount_value=10, min_order_amount=100))
    return SeedResponse(inserted=len(SEED_PRODUCTS), categories=len(paths))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
