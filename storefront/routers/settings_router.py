from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Dict

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..rate_limit import FETCH, UPDATE, admin_rate_limit, rate_limit

router = APIRouter(tags=["Settings"])


@router.get(
    "/shipping-settings",
    response_model=schemas.ShippingSettingsOut,
    dependencies=[Depends(rate_limit(FETCH))],
)
def get_shipping_settings(db: Session = Depends(get_db)):
    settings = crud.get_shipping_settings(db)
    if settings is None:
        return {"location_fees": [], "free_shipping_threshold": 0}
    return {
        "location_fees": settings.location_fees or [],
        "free_shipping_threshold": settings.free_shipping_threshold,
    }


@router.put("/shipping-settings", response_model=schemas.ShippingSettingsOut)
def update_shipping_settings(
    settings_in: schemas.ShippingSettingsIn,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
):
    locations = [f.location.strip().lower() for f in settings_in.location_fees]
    if len(set(locations)) != len(locations):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Duplicate shipping location")

    settings = crud.upsert_shipping_settings(
        db,
        [f.model_dump() for f in settings_in.location_fees],
        settings_in.free_shipping_threshold,
    )
    return {
        "location_fees": settings.location_fees,
        "free_shipping_threshold": settings.free_shipping_threshold,
    }


@router.get("/account/address", response_model=schemas.AddressOut)
def get_my_address(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    address = crud.get_address(db, current_user["id"])
    if address is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No saved address")
    return address


@router.put("/account/address", response_model=schemas.AddressOut)
def save_my_address(
    address_in: schemas.AddressIn,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.upsert_address(db, current_user["id"], address_in.model_dump())
