import pytest
import resend

from errors import ExternalServiceError
from mailer import ResendMailer, render_order_confirmation
from schemas import ContactMessage, Order, OrderItem, ShippingAddress, StoreSettings


def make_order(**overrides):
    fields = dict(
        id="ORD-ABC1234",
        stripe_session_id="cs_1",
        customer_name="Priya <b>",
        customer_email="priya@example.com",
        shipping_address=ShippingAddress(line1="7 Rose Lane", city="Austin", postal_code="73301", country="US"),
        items=[OrderItem(product_id="p1", name="Jhumkas & Studs", quantity=2, price=20)],
        subtotal=40,
        discount_amount=4,
        coupon_code="SAVE10",
        shipping_cost=7.99,
        total_amount=43.99,
    )
    fields.update(overrides)
    return Order(**fields)


def test_confirmation_lists_items_and_totals():
    html = render_order_confirmation(make_order(), StoreSettings())
    assert "ORD-ABC1234" in html
    assert "Jhumkas &amp; Studs" in html
    assert "Priya &lt;b&gt;" in html
    assert "-$4.00" in html
    assert "$7.99" in html
    assert "$43.99" in html
    assert "7 Rose Lane" in html
    assert "2-4 business days" in html


def test_pickup_confirmation_shows_store_address():
    html = render_order_confirmation(make_order(is_pickup=True), StoreSettings(pickup_address="12 Bazaar Rd"))
    assert "Store Pickup" in html
    assert "12 Bazaar Rd" in html
    assert "7 Rose Lane" not in html


async def test_missing_api_key_skips_sending(monkeypatch, caplog):
    def boom(params):
        raise AssertionError("should not be called")

    monkeypatch.setattr(resend.Emails, "send", boom)
    await ResendMailer("", "shop@example.com").send_order_confirmation(make_order(), StoreSettings())
    assert "RESEND_API_KEY not set" in caplog.text


async def test_provider_errors_are_wrapped(monkeypatch):
    def failing(params):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(resend.Emails, "send", failing)
    with pytest.raises(ExternalServiceError, match="quota exceeded"):
        await ResendMailer("re_test", "shop@example.com").send("a@example.com", "Hi", "<p>hi</p>")


async def test_contact_message_replies_to_sender(monkeypatch):
    sent = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params))
    message = ContactMessage(name="Ravi", email="ravi@example.com", subject="Sizing", message="Line one\nLine two")
    await ResendMailer("re_test", "shop@example.com").send_contact_message(message, "hello@example.com")
    assert sent[0]["to"] == ["hello@example.com"]
    assert sent[0]["reply_to"] == "ravi@example.com"
    assert "Line one<br>Line two" in sent[0]["html"]
