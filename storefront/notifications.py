"""Customer notifications triggered by order events.

A Notifier turns an order into an event payload and hands it to a
transport. Delivery problems are logged and never raised: a notification
can't undo a payment that has already been recorded.
"""
import logging
from typing import Any, Dict

from . import config
from .messaging import publish_event
from .models import utcnow
from .notification_consumer import handle_event
from .status_machine import MEASUREMENT_ORDER, ORDER

logger = logging.getLogger(__name__)


def _f(value):
    return float(value) if value is not None else None


def order_payload(event: str, order) -> Dict[str, Any]:
    return {
        "event": event,
        "occurred_at": utcnow().isoformat().replace("+00:00", "Z"),
        "order_type": ORDER,
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_email": order.email,
        "customer_name": f"{order.first_name} {order.last_name}".strip(),
        "status": order.order_status,
        "payment_status": order.payment_status,
        "subtotal": _f(order.subtotal),
        "shipping": _f(order.shipping),
        "tax": _f(order.tax),
        "total": _f(order.total),
        "cancellation_reason": order.cancellation_reason,
        "items": [
            {
                "product_name": i.product_name,
                "color": i.variant_color,
                "size": i.variant_size,
                "quantity": i.quantity,
                "total": _f(i.item_total),
            }
            for i in order.items
        ],
    }


def measurement_order_payload(event: str, order, **extra) -> Dict[str, Any]:
    payload = {
        "event": event,
        "occurred_at": utcnow().isoformat().replace("+00:00", "Z"),
        "order_type": MEASUREMENT_ORDER,
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_email": order.email,
        "customer_name": order.name,
        "status": order.status,
        "payment_status": order.payment_status,
        "price": _f(order.price),
        "delivery_fee": _f(order.delivery_fee),
        "tax": _f(order.tax),
        "total": _f(order.total),
        "cancellation_reason": order.cancellation_reason,
    }
    payload.update(extra)
    return payload


class Notifier:
    """Base notifier; subclasses implement ``send``."""

    def send(self, routing_key: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        try:
            self.send(payload["event"], payload)
        except Exception:
            logger.exception("Failed to send %s notification for %s", payload["event"], payload.get("order_number"))

    def order_paid(self, order) -> None:
        self._dispatch(order_payload("order.paid", order))

    def measurement_order_paid(self, order) -> None:
        self._dispatch(measurement_order_payload("measurement_order.paid", order))

    def measurement_order_priced(self, order, replaces_order_number: str = None) -> None:
        self._dispatch(
            measurement_order_payload(
                "measurement_order.priced", order, replaces_order_number=replaces_order_number
            )
        )

    def status_changed(self, kind: str, order) -> None:
        if kind == ORDER:
            payload = order_payload("order.status_changed", order)
        else:
            payload = measurement_order_payload("measurement_order.status_changed", order)
        self._dispatch(payload)


class BrokerNotifier(Notifier):
    """Publishes to RabbitMQ; ``notification_consumer`` does the mailing."""

    def send(self, routing_key, payload):
        publish_event(routing_key, payload)


class EmailNotifier(Notifier):
    """Mails straight from the calling thread, no broker involved."""

    def send(self, routing_key, payload):
        handle_event(payload)


class NullNotifier(Notifier):
    def send(self, routing_key, payload):
        logger.debug("Notifications disabled; dropping %s", routing_key)


_TRANSPORTS = {
    "rabbitmq": BrokerNotifier,
    "smtp": EmailNotifier,
    "none": NullNotifier,
}

_notifier = None


def get_notifier() -> Notifier:
    """FastAPI dependency returning the configured notifier."""
    global _notifier
    if _notifier is None:
        cls = _TRANSPORTS.get(config.NOTIFICATION_TRANSPORT)
        if cls is None:
            logger.warning("Unknown NOTIFICATION_TRANSPORT %r; notifications disabled", config.NOTIFICATION_TRANSPORT)
            cls = NullNotifier
        _notifier = cls()
    return _notifier
