from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Dict, Optional

from .. import crud, schemas, status_machine
from ..auth import get_current_user
from ..database import get_db
from ..notifications import Notifier, get_notifier
from ..rate_limit import FETCH, UPDATE, admin_rate_limit, rate_limit
from ..sweeper import sweep_expired_checkouts

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


@router.get(
    "/track/{order_number}",
    response_model=schemas.TrackOrderResponse,
    dependencies=[Depends(rate_limit(FETCH))],
)
def track_order(order_number: str, db: Session = Depends(get_db)):
    """Look up an order by its number; no sign-in needed.

    Regular orders are checked first, then measurement orders.
    """
    order_number = order_number.strip().upper()
    order = crud.get_order_by_number(db, order_number)
    if order is not None:
        return {"order_type": status_machine.ORDER, "order": order}

    measurement_order = crud.get_measurement_order_by_number(db, order_number)
    if measurement_order is not None:
        return {"order_type": status_machine.MEASUREMENT_ORDER, "measurement_order": measurement_order}

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Order {order_number} not found",
    )


@router.get("/me", response_model=schemas.OrderListResponse)
def get_my_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    orders, total = crud.get_orders_by_customer(db, current_user["id"], skip=skip, limit=limit)
    return {"orders": orders, "total": total, "skip": skip, "limit": limit}


@router.get("/", response_model=schemas.OrderListResponse)
def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    search: Optional[str] = Query(None, description="Order number, customer name, email or phone"),
    order_status: Optional[schemas.OrderStatus] = Query(None),
    payment_status: Optional[schemas.PaymentStatus] = Query(None),
    is_guest: Optional[bool] = Query(None),
    current_admin: Dict = Depends(admin_rate_limit(FETCH)),
    db: Session = Depends(get_db),
):
    orders, total = crud.list_orders(
        db,
        skip=skip,
        limit=limit,
        search=search,
        order_status=order_status.value if order_status else None,
        payment_status=payment_status.value if payment_status else None,
        is_guest=is_guest,
    )
    return {"orders": orders, "total": total, "skip": skip, "limit": limit}


@router.get("/{order_id:int}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_admin: Dict = Depends(admin_rate_limit(FETCH)),
    db: Session = Depends(get_db),
):
    db_order = crud.get_order(db, order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    return db_order


@router.patch("/{order_id:int}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_update: schemas.StatusUpdate,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    db_order = crud.get_order(db, order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )

    db_order = status_machine.transition(
        db, status_machine.ORDER, db_order, status_update.status.strip().lower(), status_update.reason
    )
    notifier.status_changed(status_machine.ORDER, db_order)
    return db_order


@router.post("/sweep-expired", response_model=schemas.SweepResult)
def sweep_expired(
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
):
    """Cancel unpaid orders whose stock hold has expired, right now."""
    return sweep_expired_checkouts(db)
