from __future__ import annotations

import logging
from typing import Any, Dict, List

from .config import NOTIFICATION_QUEUE
from .emailer import pick_recipient, send_email
from .messaging import start_consumer_in_thread

logger = logging.getLogger(__name__)

BINDING_KEYS = ["order.*", "measurement_order.*"]


def _money(value: Any) -> str:
    if value is None:
        return "-"
    return f"NGN {float(value):,.2f}"


def _item_lines(items: List[Dict[str, Any]]) -> List[str]:
    lines = []
    for item in items or []:
        lines.append(
            f"  - {item.get('product_name')} ({item.get('color')}/{item.get('size')}) "
            f"x{item.get('quantity')}: {_money(item.get('total'))}"
        )
    return lines


def _order_paid(payload: Dict[str, Any]) -> tuple[str, List[str]]:
    subject = f"Order confirmed: {payload.get('order_number')}"
    lines = [
        f"Hi {payload.get('customer_name') or 'there'},",
        "",
        "We've received your payment and your order is now being processed.",
        "",
        f"Order number: {payload.get('order_number')}",
        "Items:",
        *_item_lines(payload.get("items")),
        "",
        f"Subtotal: {_money(payload.get('subtotal'))}",
        f"Shipping: {_money(payload.get('shipping'))}",
        f"VAT: {_money(payload.get('tax'))}",
        f"Total paid: {_money(payload.get('total'))}",
    ]
    return subject, lines


def _measurement_order_paid(payload: Dict[str, Any]) -> tuple[str, List[str]]:
    subject = f"Payment received: {payload.get('order_number')}"
    lines = [
        f"Hi {payload.get('customer_name') or 'there'},",
        "",
        "Thank you for your payment. Our design team is now reviewing your measurements.",
        "",
        f"Order number: {payload.get('order_number')}",
        f"Total paid: {_money(payload.get('total'))}",
    ]
    return subject, lines


def _measurement_order_priced(payload: Dict[str, Any]) -> tuple[str, List[str]]:
    subject = f"Your quote is ready: {payload.get('order_number')}"
    lines = [
        f"Hi {payload.get('customer_name') or 'there'},",
        "",
        "We've priced your custom order. You can now complete payment from your order page.",
        "",
        f"Order number: {payload.get('order_number')}",
        f"Price: {_money(payload.get('price'))}",
        f"Delivery: {_money(payload.get('delivery_fee'))}",
        f"VAT: {_money(payload.get('tax'))}",
        f"Total: {_money(payload.get('total'))}",
    ]
    if payload.get("replaces_order_number"):
        lines += ["", f"This quote replaces order {payload['replaces_order_number']}."]
    return subject, lines


def _status_changed(payload: Dict[str, Any]) -> tuple[str, List[str]]:
    status = str(payload.get("status") or "").replace("_", " ")
    subject = f"Order {payload.get('order_number')} is now {status}"
    lines = [
        f"Hi {payload.get('customer_name') or 'there'},",
        "",
        f"Your order {payload.get('order_number')} is now: {status}.",
    ]
    if payload.get("cancellation_reason"):
        lines.append(f"Reason: {payload['cancellation_reason']}")
    return subject, lines


_COMPOSERS = {
    "order.paid": _order_paid,
    "measurement_order.paid": _measurement_order_paid,
    "measurement_order.priced": _measurement_order_priced,
    "order.status_changed": _status_changed,
    "measurement_order.status_changed": _status_changed,
}


def handle_event(payload: Dict[str, Any]) -> None:
    event = payload.get("event") or ""
    composer = _COMPOSERS.get(event)
    if composer is None:
        # Unknown event; ignore to avoid spamming
        logger.debug("Ignoring notification event %r", event)
        return

    to_email = pick_recipient(payload.get("customer_email"))
    if not to_email:
        logger.warning("No recipient for %s on %s", event, payload.get("order_number"))
        return

    subject, lines = composer(payload)
    send_email(to_email=to_email, subject=subject, body="\n".join(lines))
    logger.info("Sent %s email for %s", event, payload.get("order_number"))


def start_notification_consumer() -> None:
    start_consumer_in_thread(
        queue_name=NOTIFICATION_QUEUE,
        binding_keys=BINDING_KEYS,
        handler=handle_event,
    )
