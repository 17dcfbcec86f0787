"""Monnify payment gateway adapter.

Talks to the Monnify HTTP API with ``requests``. Everything that can go
wrong on the wire surfaces as PaymentGatewayError; nothing here touches
the database.
"""
from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import json
import logging
import threading
import time
from decimal import Decimal
from typing import Any, Dict, Literal, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel

from . import config
from .errors import PaymentGatewayError, ValidationError
from .pricing import money

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHODS = ["CARD", "USSD", "ACCOUNT_TRANSFER"]
SIGNATURE_HEADER = "monnify-signature"

_STATUS_MAP = {
    "PAID": "success",
    "OVERPAID": "success",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
    "USER_CANCELLED": "cancelled",
    "EXPIRED": "cancelled",
}


class PaymentResult(BaseModel):
    status: Literal["success", "failed", "cancelled", "pending"]
    amount: Optional[Decimal] = None
    reference: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[dt.datetime] = None
    provider_status: Optional[str] = None
    metadata: Dict[str, Any] = {}


class InitializedTransaction(BaseModel):
    transaction_reference: str
    payment_reference: str
    redirect_url: str


def map_status(provider_status: Optional[str]) -> str:
    return _STATUS_MAP.get((provider_status or "").strip().upper(), "pending")


def normalize_phone(phone: Optional[str]) -> str:
    """Normalise a Nigerian phone number to the 234XXXXXXXXXX form."""
    digits = (phone or "").replace("+", "").replace(" ", "").replace("-", "")
    if not digits:
        return ""
    if digits.startswith("2340"):
        return "234" + digits[4:]
    if digits.startswith("234"):
        return digits
    if digits.startswith("0"):
        return "234" + digits[1:]
    return "234" + digits


def _parse_paid_on(value: Any) -> Optional[dt.datetime]:
    if not value:
        return None
    s = str(value).strip().replace(" ", "T", 1)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(s)
    except ValueError:
        logger.warning("Unparseable paidOn value from Monnify: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _to_amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return money(value)
    except ArithmeticError:
        return None


def _result_from_provider(data: Dict[str, Any]) -> PaymentResult:
    provider_status = data.get("paymentStatus")
    return PaymentResult(
        status=map_status(provider_status),
        amount=_to_amount(data.get("amountPaid")),
        reference=data.get("transactionReference"),
        payment_reference=data.get("paymentReference"),
        paid_at=_parse_paid_on(data.get("paidOn")),
        provider_status=provider_status,
        metadata=data.get("metaData") if isinstance(data.get("metaData"), dict) else {},
    )


class MonnifyGateway:
    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        secret_key: str = None,
        contract_code: str = None,
        timeout: int = None,
    ):
        self.base_url = (base_url or config.MONNIFY_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.MONNIFY_API_KEY
        self.secret_key = secret_key if secret_key is not None else config.MONNIFY_SECRET_KEY
        self.contract_code = contract_code if contract_code is not None else config.MONNIFY_CONTRACT_CODE
        self.timeout = timeout or config.MONNIFY_TIMEOUT_SECONDS
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._lock = threading.Lock()

    # ---------- transport ----------

    def _access_token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            if not self.api_key or not self.secret_key:
                raise PaymentGatewayError("Monnify is not configured. Set MONNIFY_API_KEY and MONNIFY_SECRET_KEY.")

            credentials = base64.b64encode(f"{self.api_key}:{self.secret_key}".encode()).decode()
            body = self._call(
                "post",
                "/api/v1/auth/login",
                headers={"Authorization": f"Basic {credentials}"},
            )
            token = body.get("accessToken")
            if not token:
                raise PaymentGatewayError("Monnify login returned no access token")
            expires_in = int(body.get("expiresIn") or 300)
            self._token = token
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + max(expires_in - 60, 30)
            return token

    def _call(self, method: str, path: str, *, headers: dict = None, json_body: dict = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if method == "post":
                resp = requests.post(url, headers=headers, json=json_body, timeout=self.timeout)
            else:
                resp = requests.get(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("Monnify request to %s failed: %s", path, e)
            raise PaymentGatewayError(f"Payment provider is unavailable: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            logger.error("Monnify %s %s returned a %s instead of an object", method.upper(), path, type(payload).__name__)
            raise PaymentGatewayError("Payment provider returned an unexpected response")

        if resp.status_code >= 400 or not payload.get("requestSuccessful", False):
            message = payload.get("responseMessage") or resp.text or f"HTTP {resp.status_code}"
            logger.error("Monnify %s %s rejected: %s", method.upper(), path, message)
            raise PaymentGatewayError(f"Payment provider error: {message}")

        body = payload.get("responseBody") or {}
        if not isinstance(body, dict):
            logger.error("Monnify %s %s returned an unusable responseBody", method.upper(), path)
            raise PaymentGatewayError("Payment provider returned an unexpected response")
        return body

    def _authorized(self) -> dict:
        return {"Authorization": f"Bearer {self._access_token()}"}

    # ---------- operations ----------

    def initialize_transaction(
        self,
        *,
        amount,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str],
        payment_reference: str,
        description: str,
        metadata: Optional[dict] = None,
        redirect_url: Optional[str] = None,
    ) -> InitializedTransaction:
        amount = money(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        payload = {
            "amount": float(amount),
            "customerName": customer_name,
            "customerEmail": customer_email,
            "paymentReference": payment_reference,
            "paymentDescription": description,
            "currencyCode": config.CURRENCY_CODE,
            "contractCode": self.contract_code,
            "redirectUrl": redirect_url or f"{config.APP_PUBLIC_URL}{config.PAYMENT_REDIRECT_PATH}",
            "paymentMethods": DEFAULT_PAYMENT_METHODS,
            "metaData": metadata or {},
        }
        phone = normalize_phone(customer_phone)
        if phone:
            payload["customerPhoneNumber"] = phone

        body = self._call(
            "post",
            "/api/v1/merchant/transactions/init-transaction",
            headers=self._authorized(),
            json_body=payload,
        )
        checkout_url = body.get("checkoutUrl")
        transaction_reference = body.get("transactionReference")
        if not checkout_url or not transaction_reference:
            raise PaymentGatewayError("Payment provider returned an incomplete transaction")

        logger.info("Initialized Monnify transaction %s for %s", transaction_reference, payment_reference)
        return InitializedTransaction(
            transaction_reference=transaction_reference,
            payment_reference=body.get("paymentReference") or payment_reference,
            redirect_url=checkout_url,
        )

    def verify_transaction(self, reference: str) -> PaymentResult:
        body = self._call(
            "get",
            f"/api/v2/transactions/{quote(reference, safe='')}",
            headers=self._authorized(),
        )
        return _result_from_provider(body)

    def verify_payment_reference(self, payment_reference: str) -> PaymentResult:
        """Look a transaction up by the reference we generated for it."""
        body = self._call(
            "get",
            f"/api/v2/merchant/transactions/query?paymentReference={quote(payment_reference, safe='')}",
            headers=self._authorized(),
        )
        return _result_from_provider(body)

    def validate_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.secret_key:
            return False
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        computed = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed, signature.strip().lower())

    def parse_webhook(self, raw_body: bytes) -> PaymentResult:
        """Decode a webhook body that has already passed signature checks."""
        try:
            body = json.loads(raw_body)
        except (TypeError, ValueError) as e:
            raise ValidationError("Webhook body is not valid JSON") from e

        event_data = body.get("eventData") if isinstance(body, dict) else None
        if not body.get("eventType") or not isinstance(event_data, dict):
            raise ValidationError("Webhook is missing eventType or eventData")
        if not event_data.get("transactionReference") or not event_data.get("paymentReference"):
            raise ValidationError("Webhook is missing transaction references")

        if not event_data.get("paymentStatus") and body["eventType"] == "SUCCESSFUL_TRANSACTION":
            event_data = {**event_data, "paymentStatus": "PAID"}
        return _result_from_provider(event_data)


_gateway: Optional[MonnifyGateway] = None


def get_gateway() -> MonnifyGateway:
    """FastAPI dependency; one gateway (and token cache) per process."""
    global _gateway
    if _gateway is None:
        _gateway = MonnifyGateway()
    return _gateway
