from __future__ import annotations
import asyncio
import logging
from html import escape

import resend

from config import settings
from errors import ExternalServiceError
from schemas import ContactMessage, Order, StoreSettings

logger = logging.getLogger(__name__)


class ResendMailer:
    def __init__(self, api_key: str, sender: str, timeout: float = 10.0):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send(self, to: str, subject: str, html: str, reply_to: str | None = None) -> None:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set; not sending %r to %s", subject, to)
            return
        params = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        if reply_to:
            params["reply_to"] = reply_to
        resend.api_key = self.api_key
        try:
            await asyncio.wait_for(asyncio.to_thread(resend.Emails.send, params), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Mail provider timed out.") from e
        except Exception as e:
            raise ExternalServiceError(f"Mail provider error: {e}") from e

    async def send_order_confirmation(self, order: Order, store: StoreSettings) -> None:
        await self.send(order.customer_email, f"Order Confirmed - {order.id}", render_order_confirmation(order, store))

    async def send_contact_message(self, message: ContactMessage, inbox: str) -> None:
        html = (
            f"<p><strong>From:</strong> {escape(message.name)} &lt;{escape(message.email)}&gt;</p>"
            f"<p><strong>Subject:</strong> {escape(message.subject)}</p>"
            f"<p>{escape(message.message).replace(chr(10), '<br>')}</p>"
        )
        await self.send(inbox, f"Contact form: {message.subject}", html, reply_to=message.email)


def render_order_confirmation(order: Order, store: StoreSettings) -> str:
    rows = "".join(
        f"<tr><td>{escape(item.name)}</td>"
        f"<td style=\"text-align:center\">{item.quantity}</td>"
        f"<td style=\"text-align:right\">${item.price * item.quantity:.2f}</td></tr>"
        for item in order.items
    )
    if order.is_pickup:
        where = "<h3>Store Pickup</h3><p>" + escape(store.pickup_address or "We'll e-mail you when your order is ready.") + "</p>"
    else:
        addr = order.shipping_address
        lines = [addr.line1, addr.line2, f"{addr.city}, {addr.postal_code}", addr.country]
        where = "<h3>Shipping Address</h3><p>" + escape(order.customer_name) + "<br>" + "<br>".join(
            escape(line) for line in lines if line
        ) + "</p>"
    totals = ""
    if order.discount_amount:
        totals += f"<tr><td colspan=\"2\">Discount ({escape(order.coupon_code or '')})</td><td style=\"text-align:right\">-${order.discount_amount:.2f}</td></tr>"
    if order.shipping_cost:
        totals += f"<tr><td colspan=\"2\">Shipping</td><td style=\"text-align:right\">${order.shipping_cost:.2f}</td></tr>"
    totals += f"<tr><td colspan=\"2\"><strong>Total</strong></td><td style=\"text-align:right\"><strong>${order.total_amount:.2f}</strong></td></tr>"
    return f"""
<div style="font-family: sans-serif; color: #2C2A24; max-width: 600px; margin: 0 auto;">
  <h1>Royals and Radiant</h1>
  <h2>Thank You for Your Order!</h2>
  <p>Dear {escape(order.customer_name)},</p>
  <p>We're delighted to confirm your order. Your jewelry is being prepared with care.</p>
  <p>Order Number: <strong>{escape(order.id)}</strong></p>
  <table style="width: 100%; border-collapse: collapse;">
    <thead><tr><th style="text-align:left">Item</th><th>Qty</th><th style="text-align:right">Price</th></tr></thead>
    <tbody>{rows}</tbody>
    <tfoot>{totals}</tfoot>
  </table>
  {where}
  <p>Estimated delivery: {store.estimated_delivery_min}-{store.estimated_delivery_max} business days</p>
</div>
"""


def get_mailer() -> ResendMailer:
    return ResendMailer(settings.RESEND_API_KEY, settings.MAIL_FROM, timeout=settings.EXTERNAL_TIMEOUT_SECONDS)
