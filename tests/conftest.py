import asyncio
import json

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
from database import ensure_indexes
from errors import ExternalServiceError, SignatureVerificationError
from main import app, get_database, get_gateway, get_mailer
from schemas import Category, Coupon, Product, ShippingRule


# ------------------------- mongomock behind the motor API -------------------------
class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, n):
        self._cursor = self._cursor.limit(n)
        return self

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        async def call(*args, **kwargs):
            return attr(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self.sync = database

    def __getitem__(self, name):
        return AsyncCollection(self.sync[name])

    async def list_collection_names(self):
        return self.sync.list_collection_names()


def run(coro):
    """Drive a coroutine from sync test code (TestClient tests)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ------------------------- gateways -------------------------
class FakeGateway:
    def __init__(self):
        self.customers = []
        self.sessions = []

    async def upsert_customer(self, email, name, address=None):
        self.customers.append({"email": email, "name": name, "address": address})
        return "cus_test"

    async def create_checkout_session(self, **kwargs):
        self.sessions.append(kwargs)
        session_id = f"cs_test_{len(self.sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def parse_event(self, payload, signature):
        if signature != "valid":
            raise SignatureVerificationError("Invalid webhook signature.")
        return json.loads(payload)


class FakeMailer:
    def __init__(self):
        self.fail = False
        self.orders = []
        self.messages = []

    async def send_order_confirmation(self, order, store):
        if self.fail:
            raise ExternalServiceError("Mail provider error: boom")
        self.orders.append(order)

    async def send_contact_message(self, message, inbox):
        if self.fail:
            raise ExternalServiceError("Mail provider error: boom")
        self.messages.append((message, inbox))


def session_event(session, event_type="checkout.session.completed"):
    return {"id": "evt_test", "type": event_type, "data": {"object": session}}


def completed_session(metadata, session_id="cs_test_1", amount_total=None, payment_status="paid"):
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": "pi_test",
        "payment_status": payment_status,
        "amount_total": amount_total if amount_total is not None else 0,
        "customer_details": {"email": metadata.get("customer_email"), "name": metadata.get("customer_name")},
        "metadata": metadata,
    }


# ------------------------- fixtures -------------------------
@pytest.fixture
def db():
    database = AsyncDatabase(mongomock.MongoClient().storefront_test)
    run(ensure_indexes(database))
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, gateway, mailer):
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


IMAGE = "https://cdn.example.com/item.jpg"


async def build_catalog(db):
    """Jewelry > Necklaces, Jewelry > Earrings, Clothing > Dresses, plus one product in each."""
    jewelry = await catalog.create_category(db, Category(name="Jewelry"))
    necklaces = await catalog.create_category(db, Category(name="Necklaces", parent_id=jewelry["id"]))
    earrings = await catalog.create_category(db, Category(name="Earrings", parent_id=jewelry["id"], sort_order=1))
    clothing = await catalog.create_category(db, Category(name="Clothing", sort_order=1))
    dresses = await catalog.create_category(db, Category(name="Dresses", parent_id=clothing["id"]))

    def product(name, price, category, **extra):
        return Product(name=name, description=f"{name} description", price=price,
                       images=[IMAGE], category_id=category["id"], stock=10, **extra)

    necklace = await catalog.create_product(db, product("Kundan Necklace", 60.0, necklaces, is_combo=True))
    choker = await catalog.create_product(db, product("Pearl Choker", 40.0, necklaces, is_combo=True,
                                                      is_on_sale=True, sale_percentage=25))
    jhumkas = await catalog.create_product(db, product("Gold Jhumkas", 30.0, earrings, is_combo=True, is_featured=True))
    dress = await catalog.create_product(db, product("Silk Dress", 120.0, dresses))

    await catalog.create_shipping_rule(db, ShippingRule(min_amount=0, max_amount=49.99, price=7.99))
    await catalog.create_shipping_rule(db, ShippingRule(min_amount=50, price=0))
    await catalog.create_coupon(db, Coupon(code="save10", discount_type="PERCENTAGE",
                                           discount_value=10, min_order_amount=100))
    return {
        "jewelry": jewelry, "necklaces": necklaces, "earrings": earrings,
        "clothing": clothing, "dresses": dresses,
        "necklace": necklace, "choker": choker, "jhumkas": jhumkas, "dress": dress,
    }


@pytest.fixture
def sample(db):
    return run(build_catalog(db))
