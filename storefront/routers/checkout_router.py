from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import checkout, reconciliation, schemas
from ..auth import get_optional_user
from ..database import get_db
from ..errors import ValidationError
from ..gateway import SIGNATURE_HEADER, MonnifyGateway, get_gateway
from ..notifications import Notifier, get_notifier
from ..rate_limit import FETCH, UPDATE, rate_limit
from ..status_machine import status_field

router = APIRouter(prefix="/payment", tags=["Checkout & Payments"])


def _verification_out(kind: str, order) -> dict:
    return {
        "order_type": kind,
        "order_number": order.order_number,
        "payment_status": order.payment_status,
        "status": getattr(order, status_field(kind)),
        "total": order.total,
        "paid_at": order.paid_at,
    }


@router.post(
    "/checkout",
    response_model=schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit(UPDATE))],
)
def start_checkout(
    request_body: schemas.CheckoutRequest,
    current_user: Optional[Dict] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    gateway: MonnifyGateway = Depends(get_gateway),
):
    """Place an order, hold its stock and return the payment page URL.

    Guests must send a complete shipping address; signed-in customers may
    rely on their saved address.
    """
    customer_id = current_user["id"] if current_user else None
    shipping = request_body.shipping.model_dump() if request_body.shipping else None
    order, transaction = checkout.initiate_checkout(
        db,
        gateway,
        customer_id,
        [item.model_dump() for item in request_body.items],
        shipping,
    )
    return {
        "order": order,
        "payment_url": transaction.redirect_url,
        "transaction_reference": transaction.transaction_reference,
        "payment_reference": transaction.payment_reference,
    }


@router.get(
    "/verify",
    response_model=schemas.PaymentVerificationOut,
    dependencies=[Depends(rate_limit(FETCH))],
)
def verify_payment(
    reference: Optional[str] = Query(None, description="Transaction reference, payment reference or order number"),
    transaction_reference: Optional[str] = Query(None, alias="transactionReference"),
    payment_reference: Optional[str] = Query(None, alias="paymentReference"),
    db: Session = Depends(get_db),
    gateway: MonnifyGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Confirm a payment with the provider after the customer is redirected back."""
    ref = transaction_reference or reference or payment_reference
    if not ref:
        raise ValidationError("A payment reference is required")
    kind, order, _ = reconciliation.handle_polled_verification(db, gateway, notifier, ref)
    return _verification_out(kind, order)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: MonnifyGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    # Signature is computed over the exact bytes received
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    kind, order, changed = await run_in_threadpool(
        reconciliation.handle_webhook, db, gateway, notifier, raw_body, signature
    )
    return {"received": True, "changed": changed, **_verification_out(kind, order)}
