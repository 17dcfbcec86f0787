from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import VAT_RATE
from .errors import ValidationError

CENT = Decimal("0.01")
TAX_RATE = Decimal(VAT_RATE)


def money(value) -> Decimal:
    """Round to 2dp, half up."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def effective_unit_price(price, discount_price=None) -> Decimal:
    """Discount applies only when it is positive and below the list price."""
    price = money(price)
    if discount_price is not None:
        discount = money(discount_price)
        if Decimal("0") < discount < price:
            return discount
    return price


def line_amounts(price, discount_price, quantity: int) -> dict:
    return {
        "item_subtotal": money(money(price) * quantity),
        "item_total": money(effective_unit_price(price, discount_price) * quantity),
    }


class ShippingTerms:
    """Location fee table and free-shipping threshold.

    Built from the stored ShippingSettings row; a missing row means no fees
    and no threshold.
    """

    def __init__(self, location_fees=None, free_shipping_threshold=None):
        self.fees = {}
        for entry in location_fees or []:
            location = str(entry.get("location") or "").strip()
            if location:
                self.fees[location.lower()] = money(entry.get("fee"))
        self.free_shipping_threshold = money(free_shipping_threshold)

    @classmethod
    def from_settings(cls, settings) -> "ShippingTerms":
        if settings is None:
            return cls()
        return cls(settings.location_fees, settings.free_shipping_threshold)

    def fee_for(self, location: Optional[str]) -> Decimal:
        if not self.fees:
            return money(0)
        key = (location or "").strip().lower()
        if not key:
            raise ValidationError("A shipping location is required")
        if key not in self.fees:
            raise ValidationError(f"We don't deliver to '{location}' yet")
        return self.fees[key]

    def qualifies_for_free_shipping(self, amount) -> bool:
        return self.free_shipping_threshold > 0 and money(amount) >= self.free_shipping_threshold


def calculate_totals(subtotal, terms: ShippingTerms, location: Optional[str]) -> dict:
    """Order totals; total = subtotal + shipping + tax, each rounded to 2dp."""
    subtotal = money(subtotal)
    fee = terms.fee_for(location)
    shipping = money(0) if terms.qualifies_for_free_shipping(subtotal) else fee
    tax = money(subtotal * TAX_RATE)
    return {
        "subtotal": subtotal,
        "shipping": shipping,
        "tax": tax,
        "total": money(subtotal + shipping + tax),
    }


def measurement_totals(price, delivery_fee, terms: ShippingTerms) -> dict:
    """Measurement orders pay VAT on the price plus delivery."""
    price = money(price)
    if price <= 0:
        raise ValidationError("Price must be greater than zero")
    fee = money(0) if terms.qualifies_for_free_shipping(price) else money(delivery_fee)
    tax = money((price + fee) * TAX_RATE)
    return {
        "price": price,
        "delivery_fee": fee,
        "tax": tax,
        "total": money(price + fee + tax),
    }
