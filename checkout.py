"""
Checkout orchestration.

Turns a client cart into a hosted Stripe Checkout session. Nothing is
persisted here: the order only comes into existence when Stripe reports the
session as paid (see ``orders.handle_webhook``). Everything the order will
need is therefore snapshotted into the session metadata.
"""
from __future__ import annotations
import json
import logging
import random
import string
from typing import Any, Optional

import catalog
import pricing
from cart import COMBO_SIZE, Cart, combo_member_prices
from config import settings
from errors import ValidationError
from schemas import AppliedCoupon, CartItem, CheckoutRequest, CheckoutSession, ContactInfo, StoreSettings
from shipping import effective_shipping_category

logger = logging.getLogger(__name__)

# Stripe limits: 50 metadata keys, 500 characters per value
METADATA_CHUNK = 500
MAX_ITEM_CHUNKS = 35

PICKUP_FIELDS = ("customer_name", "customer_email")
DELIVERY_FIELDS = PICKUP_FIELDS + ("address_line1", "city", "postal_code", "country")

FIELD_LABELS = {
    "customer_name": "name",
    "customer_email": "email",
    "address_line1": "address line 1",
    "city": "city",
    "postal_code": "postal code",
    "country": "country",
}


def new_order_id() -> str:
    return "ORD-" + "".join(random.choices(string.ascii_uppercase + string.digits, k=7))


def validate_contact(
    contact: ContactInfo, is_pickup: bool, allowed_countries: Optional[list[str]] = None
) -> ContactInfo:
    for field in PICKUP_FIELDS if is_pickup else DELIVERY_FIELDS:
        if not (getattr(contact, field) or "").strip():
            raise ValidationError(f"Please fill in your {FIELD_LABELS[field]}.", field=field)
    if "@" not in contact.customer_email:
        raise ValidationError("Please enter a valid email address.", field="customer_email")
    if not is_pickup and allowed_countries and contact.country.upper() not in allowed_countries:
        raise ValidationError("We do not ship to this country yet.", field="country")
    return contact


async def reprice_items(db, items: list[CartItem], store: StoreSettings) -> list[CartItem]:
    """Re-derive every unit price from the catalog; client prices are never trusted."""
    wanted = {item.original_product_id or item.product_id for item in items}
    products = await catalog.get_products_by_ids(db, list(wanted))

    combo_prices: dict[tuple[str, str], float] = {}
    for group_id, members in Cart(items).combo_groups().items():
        originals = {m.original_product_id for m in members}
        if len(members) != COMBO_SIZE or len(originals) != COMBO_SIZE:
            raise ValidationError(f"Combo {group_id} must contain exactly {COMBO_SIZE} different products.")
        for member, price in zip(members, combo_member_prices(store.combo_price)):
            combo_prices[(group_id, member.product_id)] = price

    repriced = []
    for item in items:
        catalog_id = item.original_product_id or item.product_id
        product = products.get(catalog_id)
        if product is None:
            raise ValidationError(f"Product {catalog_id} is no longer available.", field="items")
        if item.combo_group_id:
            catalog.ensure_combo_eligible(product)
            unit_price = combo_prices[(item.combo_group_id, item.product_id)]
        else:
            unit_price = catalog.effective_price(product)
        repriced.append(item.model_copy(update={
            "unit_price": unit_price,
            "shipping_category": product["shipping_category"],
        }))
    return repriced


def build_line_items(items: list[CartItem], shipping_cost: float, currency: str = "usd") -> list[dict[str, Any]]:
    line_items = [
        {
            "price_data": {
                "currency": currency,
                "product_data": {"name": item.name, "images": [item.image] if item.image else []},
                "unit_amount": round(item.unit_price * 100),
            },
            "quantity": item.quantity,
        }
        for item in items
    ]
    if shipping_cost > 0:
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": {"name": "Shipping & Handling"},
                "unit_amount": round(shipping_cost * 100),
            },
            "quantity": 1,
        })
    return line_items


def pack_items_metadata(items: list[CartItem]) -> dict[str, str]:
    snapshot = [
        {
            "id": item.product_id,
            "quantity": item.quantity,
            "price": round(item.unit_price, 2),
            "name": item.name,
            "combo_id": item.combo_group_id,
            "original_product_id": item.original_product_id,
            "color": item.color,
            "size": item.size,
        }
        for item in items
    ]
    raw = json.dumps(snapshot, separators=(",", ":"))
    chunks = [raw[i:i + METADATA_CHUNK] for i in range(0, len(raw), METADATA_CHUNK)]
    if len(chunks) > MAX_ITEM_CHUNKS:
        raise ValidationError("Too many items for a single checkout.", field="items")
    return {f"items_{i}": chunk for i, chunk in enumerate(chunks)}


def unpack_items_metadata(metadata: dict[str, str]) -> list[dict[str, Any]]:
    parts = []
    i = 0
    while f"items_{i}" in metadata:
        parts.append(metadata[f"items_{i}"])
        i += 1
    if not parts:
        raise ValidationError("Missing metadata in session")
    try:
        items = json.loads("".join(parts))
    except ValueError as e:
        raise ValidationError("Corrupt item metadata in session") from e
    if not isinstance(items, list) or not items:
        raise ValidationError("Missing metadata in session")
    return items


def build_metadata(
    order_id: str,
    contact: ContactInfo,
    items: list[CartItem],
    shipping_cost: float,
    applied_coupon: Optional[AppliedCoupon],
    is_pickup: bool,
) -> dict[str, str]:
    subtotal = Cart(items).total
    return {
        "order_id": order_id,
        "customer_name": contact.customer_name.strip(),
        "customer_email": contact.customer_email.strip(),
        "address_line1": "" if is_pickup else contact.address_line1,
        "address_line2": "" if is_pickup else (contact.address_line2 or ""),
        "city": "" if is_pickup else contact.city,
        "postal_code": "" if is_pickup else contact.postal_code,
        "country": "" if is_pickup else contact.country.upper(),
        "subtotal": f"{subtotal:.2f}",
        "shipping_cost": f"{shipping_cost:.2f}",
        "coupon_code": applied_coupon.code if applied_coupon else "",
        "discount_amount": f"{applied_coupon.discount_amount:.2f}" if applied_coupon else "0",
        "is_pickup": "true" if is_pickup else "false",
        **pack_items_metadata(items),
    }


async def initiate_checkout(
    gateway,
    items: list[CartItem],
    contact: ContactInfo,
    shipping_cost: float = 0.0,
    applied_coupon: Optional[AppliedCoupon] = None,
    is_pickup: bool = False,
) -> CheckoutSession:
    if not items:
        raise ValidationError("Your cart is empty.", field="items")
    validate_contact(contact, is_pickup, settings.ALLOWED_SHIPPING_COUNTRIES)
    if is_pickup:
        shipping_cost = 0.0

    order_id = new_order_id()
    address = None
    if not is_pickup:
        address = {
            "line1": contact.address_line1,
            "line2": contact.address_line2 or None,
            "city": contact.city,
            "postal_code": contact.postal_code,
            "country": contact.country.upper(),
        }
    customer_id = await gateway.upsert_customer(contact.customer_email.strip(), contact.customer_name.strip(), address)

    app_url = settings.APP_URL.rstrip("/")
    session = await gateway.create_checkout_session(
        line_items=build_line_items(items, shipping_cost, settings.CURRENCY),
        success_url=f"{app_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{app_url}/checkout",
        metadata=build_metadata(order_id, contact, items, shipping_cost, applied_coupon, is_pickup),
        customer_id=customer_id,
        discount_cents=round(applied_coupon.discount_amount * 100) if applied_coupon else 0,
        discount_label=f"Discount: {applied_coupon.code}" if applied_coupon else "Discount",
        allowed_countries=None if is_pickup else settings.ALLOWED_SHIPPING_COUNTRIES,
    )
    logger.info("Checkout session %s created for %s", session.get("id"), order_id)
    return CheckoutSession(url=session["url"], order_id=order_id, session_id=session.get("id"))


async def checkout(db, gateway, request: CheckoutRequest, store: StoreSettings) -> CheckoutSession:
    if not request.items:
        raise ValidationError("Your cart is empty.", field="items")
    if request.is_pickup and not store.allow_store_pickup:
        raise ValidationError("Store pickup is not available.", field="is_pickup")
    validate_contact(request.contact, request.is_pickup, settings.ALLOWED_SHIPPING_COUNTRIES)

    items = await reprice_items(db, request.items, store)
    selection = pricing.ShippingSelection(request.is_pickup, effective_shipping_category(items))
    breakdown = await pricing.quote(db, Cart(items).total, request.coupon_code, selection)
    applied = None
    if breakdown.coupon_code and breakdown.discount > 0:
        applied = AppliedCoupon(code=breakdown.coupon_code, discount_amount=breakdown.discount)
    return await initiate_checkout(gateway, items, request.contact, breakdown.shipping_cost, applied, request.is_pickup)
