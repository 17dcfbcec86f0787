from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Dict, Optional

from .. import checkout, crud, schemas, status_machine
from ..auth import get_current_user, get_optional_user
from ..database import get_db
from ..gateway import MonnifyGateway, get_gateway
from ..notifications import Notifier, get_notifier
from ..rate_limit import FETCH, UPDATE, admin_rate_limit, rate_limit

router = APIRouter(prefix="/measurement-orders", tags=["Measurement Orders"])


def _get_or_404(db: Session, order_id: int):
    order = crud.get_measurement_order(db, order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Measurement order with id {order_id} not found",
        )
    return order


def _ensure_owner(order, current_user: Optional[Dict], email: Optional[str]) -> None:
    """Customers may pay their own orders; guests must know the order email."""
    if current_user and current_user.get("is_admin"):
        return
    if order.customer_id is not None:
        if not current_user or current_user["id"] != order.customer_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not allowed to pay for this order",
            )
        return
    if not email or email.strip().lower() != (order.email or "").strip().lower():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The email does not match this order",
        )


@router.post(
    "/",
    response_model=schemas.MeasurementOrderOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit(UPDATE))],
)
def request_measurement_order(
    order_in: schemas.MeasurementOrderCreate,
    current_user: Optional[Dict] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    customer_id = current_user["id"] if current_user else None
    data = order_in.model_dump()
    return checkout.create_measurement_order(db, customer_id, data)


@router.get("/me", response_model=schemas.MeasurementOrderListResponse)
def get_my_measurement_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    orders, total = crud.get_measurement_orders_by_customer(db, current_user["id"], skip=skip, limit=limit)
    return {"orders": orders, "total": total, "skip": skip, "limit": limit}


@router.get("/", response_model=schemas.MeasurementOrderListResponse)
def list_measurement_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    search: Optional[str] = Query(None),
    order_status: Optional[schemas.MeasurementOrderStatus] = Query(None, alias="status"),
    payment_status: Optional[schemas.PaymentStatus] = Query(None),
    include_replaced: bool = Query(False),
    current_admin: Dict = Depends(admin_rate_limit(FETCH)),
    db: Session = Depends(get_db),
):
    orders, total = crud.list_measurement_orders(
        db,
        skip=skip,
        limit=limit,
        search=search,
        status=order_status.value if order_status else None,
        payment_status=payment_status.value if payment_status else None,
        include_replaced=include_replaced,
    )
    return {"orders": orders, "total": total, "skip": skip, "limit": limit}


@router.get("/{order_id:int}", response_model=schemas.MeasurementOrderOut)
def get_measurement_order(
    order_id: int,
    current_admin: Dict = Depends(admin_rate_limit(FETCH)),
    db: Session = Depends(get_db),
):
    return _get_or_404(db, order_id)


@router.patch("/{order_id:int}/price", response_model=schemas.MeasurementOrderOut)
def set_price(
    order_id: int,
    price_update: schemas.MeasurementPriceUpdate,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Set the price; an already priced order is replaced by a new one.

    Returns the order that now carries the price.
    """
    priced, replaced = checkout.set_measurement_order_price(db, order_id, price_update.price, current_admin["id"])
    notifier.measurement_order_priced(priced, replaces_order_number=replaced.order_number if replaced else None)
    return priced


@router.patch("/{order_id:int}/status", response_model=schemas.MeasurementOrderOut)
def update_status(
    order_id: int,
    status_update: schemas.StatusUpdate,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    order = _get_or_404(db, order_id)
    order = status_machine.transition(
        db, status_machine.MEASUREMENT_ORDER, order, status_update.status.strip().lower(), status_update.reason
    )
    notifier.status_changed(status_machine.MEASUREMENT_ORDER, order)
    return order


@router.post(
    "/{order_number}/checkout",
    response_model=schemas.MeasurementCheckoutResponse,
    dependencies=[Depends(rate_limit(UPDATE))],
)
def checkout_measurement_order(
    order_number: str,
    request_body: Optional[schemas.MeasurementCheckoutRequest] = None,
    current_user: Optional[Dict] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    gateway: MonnifyGateway = Depends(get_gateway),
):
    """Open a payment for a priced measurement order."""
    order = crud.get_measurement_order_by_number(db, order_number.strip().upper())
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Measurement order {order_number} not found",
        )
    _ensure_owner(order, current_user, request_body.email if request_body else None)

    order, transaction = checkout.initialize_measurement_order_checkout(db, gateway, order.id)
    return {
        "order": order,
        "payment_url": transaction.redirect_url,
        "transaction_reference": transaction.transaction_reference,
        "payment_reference": transaction.payment_reference,
    }
