from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional, Dict

from .. import crud, schemas
from ..database import get_db
from ..rate_limit import DELETE, FETCH, UPDATE, admin_rate_limit, rate_limit

router = APIRouter(prefix="/products", tags=["Catalog"])

_VALUE_ERRORS = {
    "duplicate_product_name": (status.HTTP_409_CONFLICT, "Product name already exists"),
    "name_required": (status.HTTP_400_BAD_REQUEST, "Product name is required"),
    "duplicate_variant": (status.HTTP_400_BAD_REQUEST, "Each color/size combination may appear only once"),
    "discount_above_price": (status.HTTP_400_BAD_REQUEST, "Discount price cannot exceed the price"),
    "quantity_below_reserved": (
        status.HTTP_409_CONFLICT,
        "Quantity cannot be lower than the units currently reserved for checkouts",
    ),
    "stock_reserved": (
        status.HTTP_409_CONFLICT,
        "Product has stock reserved for pending checkouts and cannot be deleted",
    ),
}


def _value_error(e: ValueError) -> HTTPException:
    code, message = _VALUE_ERRORS.get(str(e), (status.HTTP_400_BAD_REQUEST, str(e)))
    return HTTPException(status_code=code, detail=message)


@router.post("/", response_model=schemas.ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    product: schemas.ProductCreate,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
):
    product_data = product.model_dump(exclude={"variants"})
    variants = [v.model_dump() for v in product.variants]
    try:
        return crud.create_product(db, product_data, variants)
    except ValueError as e:
        raise _value_error(e)
    except IntegrityError:
        # DB-level unique constraint (race conditions)
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product name already exists")


@router.get("/", response_model=schemas.ProductListResponse, dependencies=[Depends(rate_limit(FETCH))])
def list_products(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    search: Optional[str] = Query(None, description="Search in name, description or category"),
    category: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    products, total = crud.get_products(db, skip=skip, limit=limit, search=search, category=category)
    return {"products": products, "total": total, "skip": skip, "limit": limit}


@router.get("/{product_id}", response_model=schemas.ProductOut, dependencies=[Depends(rate_limit(FETCH))])
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = crud.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


@router.patch("/variants/{variant_id}", response_model=schemas.VariantOut)
def update_variant(
    variant_id: int,
    variant_update: schemas.VariantUpdate,
    current_admin: Dict = Depends(admin_rate_limit(UPDATE)),
    db: Session = Depends(get_db),
):
    try:
        variant = crud.update_variant(db, variant_id, variant_update.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _value_error(e)
    if not variant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant not found")
    return variant


@router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: int,
    current_admin: Dict = Depends(admin_rate_limit(DELETE)),
    db: Session = Depends(get_db),
):
    try:
        product = crud.delete_product(db, product_id)
    except ValueError as e:
        raise _value_error(e)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return None
