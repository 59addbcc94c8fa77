"""
Order materialization from Stripe webhooks, plus order queries.

An order is written exactly once per Stripe checkout session. The unique
index on ``order.stripe_session_id`` (see ``database.ensure_indexes``) turns
webhook redeliveries into no-ops: the second insert hits ``DuplicateKeyError``
and the already-stored order is returned instead.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import catalog
from checkout import new_order_id, unpack_items_metadata
from database import utcnow
from errors import NotFoundError, PersistenceError, ValidationError
from schemas import Order, OrderItem, OrderStatus, ShippingAddress

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass
class WebhookResult:
    received: bool = True
    order_id: Optional[str] = None
    created: bool = False


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def order_from_session(session: dict[str, Any]) -> Order:
    """Build the order snapshot from a completed checkout session's metadata."""
    metadata = session.get("metadata") or {}
    raw_items = unpack_items_metadata(metadata)
    details = session.get("customer_details") or {}

    try:
        items = [
            OrderItem(
                # combo members carry a synthetic id; fulfillment needs the catalog one
                product_id=raw.get("original_product_id") or raw["id"],
                name=raw.get("name") or "Item",
                quantity=int(raw["quantity"]),
                price=_float(raw.get("price")),
                combo_group_id=raw.get("combo_id"),
                color=raw.get("color"),
                size=raw.get("size"),
            )
            for raw in raw_items
        ]
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ValidationError("Malformed item metadata in session") from e
    subtotal = _float(metadata.get("subtotal"), sum(i.price * i.quantity for i in items))
    return Order(
        id=metadata.get("order_id") or new_order_id(),
        stripe_session_id=session["id"],
        payment_id=session.get("payment_intent"),
        customer_name=metadata.get("customer_name") or details.get("name") or "",
        customer_email=details.get("email") or session.get("customer_email") or metadata.get("customer_email") or "",
        shipping_address=ShippingAddress(
            line1=metadata.get("address_line1") or "",
            line2=metadata.get("address_line2") or None,
            city=metadata.get("city") or "",
            postal_code=metadata.get("postal_code") or "",
            country=metadata.get("country") or "",
        ),
        items=items,
        subtotal=round(subtotal, 2),
        discount_amount=_float(metadata.get("discount_amount")),
        coupon_code=metadata.get("coupon_code") or None,
        shipping_cost=_float(metadata.get("shipping_cost")),
        total_amount=(session.get("amount_total") or 0) / 100,
        is_pickup=metadata.get("is_pickup") == "true",
        status=OrderStatus.COMPLETED if session.get("payment_status") in ("paid", "no_payment_required") else OrderStatus.PENDING,
    )


def _to_doc(order: Order) -> dict[str, Any]:
    doc = order.model_dump(mode="python", exclude={"id"})
    doc["_id"] = order.id
    doc["status"] = order.status.value
    doc["created_at"] = order.created_at or utcnow()
    doc["updated_at"] = doc["created_at"]
    return doc


def _from_doc(doc: dict[str, Any]) -> Order:
    d = dict(doc)
    d["id"] = str(d.pop("_id"))
    return Order.model_validate(d)


async def insert_order_once(db, order: Order, attempts: int = 3) -> tuple[Order, bool]:
    """Insert ``order`` unless one already exists for its Stripe session.

    Returns ``(order, created)``; on a replay the stored order comes back with
    ``created=False``.
    """
    for _ in range(attempts):
        doc = _to_doc(order)
        try:
            await db["order"].insert_one(doc)
            return _from_doc(doc), True
        except DuplicateKeyError:
            try:
                existing = await db["order"].find_one({"stripe_session_id": order.stripe_session_id})
            except PyMongoError as e:
                raise PersistenceError("Failed to create order.") from e
            if existing is not None:
                return _from_doc(existing), False
            # order id clash with a different session
            order = order.model_copy(update={"id": new_order_id()})
        except PyMongoError as e:
            logger.exception("Database Error: order insert failed")
            raise PersistenceError("Failed to create order.") from e
    raise PersistenceError("Failed to allocate an order id.")


async def _after_order_created(db, mailer, order: Order) -> None:
    # The order is already durable; a retry would be a duplicate and skip this,
    # so failures here are logged rather than raised.
    for item in order.items:
        try:
            await catalog.decrement_stock(db, item.product_id, item.quantity)
        except PersistenceError:
            logger.exception("Stock update failed for %s (order %s)", item.product_id, order.id)
    if order.status != OrderStatus.COMPLETED:
        return
    await send_confirmation(db, mailer, order)


async def send_confirmation(db, mailer, order: Order) -> None:
    try:
        store = await catalog.get_store_settings(db)
        await mailer.send_order_confirmation(order, store)
        logger.info("Order confirmation email sent to %s", order.customer_email)
    except Exception:
        logger.exception("Failed to send order confirmation email for %s", order.id)


async def handle_webhook(db, gateway, mailer, payload: bytes, signature: Optional[str]) -> WebhookResult:
    event = gateway.parse_event(payload, signature)
    event_type = event.get("type")
    session = (event.get("data") or {}).get("object") or {}

    if event_type == SESSION_COMPLETED:
        if not session.get("id"):
            raise ValidationError("Missing session id in event")
        order, created = await insert_order_once(db, order_from_session(session))
        if created:
            logger.info("Order %s created for session %s", order.id, order.stripe_session_id)
            await _after_order_created(db, mailer, order)
        else:
            logger.info("Duplicate delivery for session %s ignored (order %s)", order.stripe_session_id, order.id)
        return WebhookResult(order_id=order.id, created=created)

    if event_type in (ASYNC_PAYMENT_SUCCEEDED, ASYNC_PAYMENT_FAILED):
        existing = await get_order_by_session_id(db, session.get("id", ""))
        if existing is None:
            # completed event not processed yet; Stripe will redeliver
            raise PersistenceError(f"No order for session {session.get('id')} yet.")
        target = OrderStatus.COMPLETED if event_type == ASYNC_PAYMENT_SUCCEEDED else OrderStatus.CANCELLED
        if existing.status == OrderStatus.PENDING:
            order = await update_order_status(db, existing.id, target)
            if target == OrderStatus.COMPLETED:
                await send_confirmation(db, mailer, order)
        return WebhookResult(order_id=existing.id)

    logger.debug("Ignoring Stripe event %s", event_type)
    return WebhookResult()


async def get_order(db, order_id: str) -> Optional[Order]:
    try:
        doc = await db["order"].find_one({"_id": order_id})
    except PyMongoError as e:
        raise PersistenceError("Failed to fetch order.") from e
    return _from_doc(doc) if doc else None


async def get_order_by_session_id(db, session_id: str) -> Optional[Order]:
    try:
        doc = await db["order"].find_one({"stripe_session_id": session_id})
    except PyMongoError as e:
        raise PersistenceError("Failed to fetch order.") from e
    return _from_doc(doc) if doc else None


async def list_orders(db, status: Optional[OrderStatus] = None, limit: int = 200) -> list[Order]:
    filt = {"status": status.value} if status else {}
    try:
        docs = await db["order"].find(filt).sort([("created_at", DESCENDING)]).limit(limit).to_list(length=None)
    except PyMongoError as e:
        raise PersistenceError("Failed to fetch orders.") from e
    return [_from_doc(d) for d in docs]


async def update_order_status(db, order_id: str, new_status: OrderStatus) -> Order:
    order = await get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found.")
    if new_status == order.status:
        return order
    if new_status not in ALLOWED_TRANSITIONS[order.status]:
        raise ValidationError(
            f"Cannot change order status from {order.status.value} to {new_status.value}.", field="status"
        )
    try:
        # conditional on the old status so concurrent admins can't both win
        result = await db["order"].update_one(
            {"_id": order_id, "status": order.status.value},
            {"$set": {"status": new_status.value, "updated_at": utcnow()}},
        )
    except PyMongoError as e:
        raise PersistenceError("Failed to update order.") from e
    if result.matched_count == 0:
        raise ValidationError("Order status changed concurrently; reload and retry.", field="status")
    return order.model_copy(update={"status": new_status})
