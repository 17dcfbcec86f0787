"""Tests for the Monnify gateway adapter."""

import datetime as dt
import json
from decimal import Decimal

import pytest
import requests

from storefront import gateway as gateway_module
from storefront.errors import PaymentGatewayError, ValidationError
from storefront.gateway import MonnifyGateway, map_status, normalize_phone

from tests.conftest import WEBHOOK_SECRET, sign


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def ok(body):
    return FakeResponse({"requestSuccessful": True, "responseMessage": "success", "responseBody": body})


@pytest.fixture
def monnify():
    return MonnifyGateway(
        base_url="https://sandbox.monnify.test/",
        api_key="MK_TEST_KEY",
        secret_key=WEBHOOK_SECRET,
        contract_code="1234567890",
        timeout=5,
    )


@pytest.fixture
def http(monkeypatch):
    """Record outgoing calls and answer them from a queue."""
    calls = []
    replies = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append(("POST", url, headers, json))
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def fake_get(url, headers=None, timeout=None):
        calls.append(("GET", url, headers, None))
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(gateway_module.requests, "post", fake_post)
    monkeypatch.setattr(gateway_module.requests, "get", fake_get)
    return calls, replies


LOGIN = ok({"accessToken": "token-123", "expiresIn": 3600})


def init_kwargs(**overrides):
    kwargs = dict(
        amount=Decimal("34750"),
        customer_name="Ada Obi",
        customer_email="ada@example.com",
        customer_phone="0803 123 4567",
        payment_reference="ORD-20261018-ABC123",
        description="Payment for order ORD-20261018-ABC123",
        metadata={"order_type": "order", "order_number": "ORD-20261018-ABC123"},
    )
    kwargs.update(overrides)
    return kwargs


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("08031234567", "2348031234567"),
            ("+234 803 123 4567", "2348031234567"),
            ("2340803123456", "234803123456"),
            ("8031234567", "2348031234567"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize(
        "provider_status, expected",
        [
            ("PAID", "success"),
            ("overpaid", "success"),
            ("FAILED", "failed"),
            ("USER_CANCELLED", "cancelled"),
            ("EXPIRED", "cancelled"),
            ("PENDING", "pending"),
            ("PARTIALLY_PAID", "pending"),
            (None, "pending"),
        ],
    )
    def test_map_status(self, provider_status, expected):
        assert map_status(provider_status) == expected


class TestInitializeTransaction:
    def test_logs_in_then_initializes(self, monnify, http):
        calls, replies = http
        replies.extend([
            LOGIN,
            ok({
                "transactionReference": "MNFY|20261018|000001",
                "paymentReference": "ORD-20261018-ABC123",
                "checkoutUrl": "https://sandbox.sdk.monnify.test/checkout/MNFY|20261018|000001",
            }),
        ])

        tx = monnify.initialize_transaction(**init_kwargs())

        assert tx.transaction_reference == "MNFY|20261018|000001"
        assert tx.payment_reference == "ORD-20261018-ABC123"
        assert tx.redirect_url.startswith("https://sandbox.sdk.monnify.test/checkout/")

        login, init = calls
        assert login[1] == "https://sandbox.monnify.test/api/v1/auth/login"
        assert login[2]["Authorization"].startswith("Basic ")
        assert init[1] == "https://sandbox.monnify.test/api/v1/merchant/transactions/init-transaction"
        assert init[2] == {"Authorization": "Bearer token-123"}
        body = init[3]
        assert body["amount"] == 34750.0
        assert body["currencyCode"] == "NGN"
        assert body["contractCode"] == "1234567890"
        assert body["customerPhoneNumber"] == "2348031234567"
        assert body["metaData"]["order_number"] == "ORD-20261018-ABC123"

    def test_access_token_is_cached(self, monnify, http):
        calls, replies = http
        tx_body = {"transactionReference": "T1", "checkoutUrl": "https://pay/T1"}
        replies.extend([LOGIN, ok(tx_body), ok(tx_body)])

        monnify.initialize_transaction(**init_kwargs())
        monnify.initialize_transaction(**init_kwargs())

        assert [c[1].rsplit("/", 1)[-1] for c in calls] == ["login", "init-transaction", "init-transaction"]

    def test_phone_omitted_when_blank(self, monnify, http):
        calls, replies = http
        replies.extend([LOGIN, ok({"transactionReference": "T1", "checkoutUrl": "https://pay/T1"})])
        monnify.initialize_transaction(**init_kwargs(customer_phone=None))
        assert "customerPhoneNumber" not in calls[1][3]

    def test_non_positive_amount_rejected_before_any_call(self, monnify, http):
        calls, _ = http
        with pytest.raises(ValidationError):
            monnify.initialize_transaction(**init_kwargs(amount=0))
        assert calls == []

    def test_transport_error_becomes_gateway_error(self, monnify, http):
        _, replies = http
        replies.append(requests.exceptions.ConnectionError("connection refused"))
        with pytest.raises(PaymentGatewayError, match="unavailable"):
            monnify.initialize_transaction(**init_kwargs())

    def test_rejected_request_becomes_gateway_error(self, monnify, http):
        _, replies = http
        replies.extend([
            LOGIN,
            FakeResponse({"requestSuccessful": False, "responseMessage": "Duplicate payment reference"}),
        ])
        with pytest.raises(PaymentGatewayError, match="Duplicate payment reference"):
            monnify.initialize_transaction(**init_kwargs())

    def test_http_error_without_json(self, monnify, http):
        _, replies = http
        replies.append(FakeResponse(None, status_code=503, text="Service Unavailable"))
        with pytest.raises(PaymentGatewayError, match="Service Unavailable"):
            monnify.initialize_transaction(**init_kwargs())

    def test_incomplete_response_rejected(self, monnify, http):
        _, replies = http
        replies.extend([LOGIN, ok({"transactionReference": "T1"})])
        with pytest.raises(PaymentGatewayError, match="incomplete"):
            monnify.initialize_transaction(**init_kwargs())

    @pytest.mark.parametrize("payload", [["unexpected"], "OK", 42])
    def test_non_object_json_becomes_gateway_error(self, monnify, http, payload):
        _, replies = http
        replies.extend([LOGIN, FakeResponse(payload)])
        with pytest.raises(PaymentGatewayError, match="unexpected response"):
            monnify.initialize_transaction(**init_kwargs())

    def test_non_object_response_body_becomes_gateway_error(self, monnify, http):
        _, replies = http
        replies.extend([LOGIN, ok(["MNFY|20261018|000001"])])
        with pytest.raises(PaymentGatewayError, match="unexpected response"):
            monnify.initialize_transaction(**init_kwargs())

    def test_unconfigured_gateway(self, http):
        unconfigured = MonnifyGateway(base_url="https://x", api_key="", secret_key="", contract_code="")
        with pytest.raises(PaymentGatewayError, match="not configured"):
            unconfigured.initialize_transaction(**init_kwargs())


class TestVerifyTransaction:
    def test_paid_transaction(self, monnify, http):
        calls, replies = http
        replies.extend([
            LOGIN,
            ok({
                "transactionReference": "MNFY|20261018|000001",
                "paymentReference": "ORD-20261018-ABC123",
                "amountPaid": "34750.00",
                "paidOn": "2026-10-18 10:15:00.0",
                "paymentStatus": "PAID",
                "metaData": {"order_number": "ORD-20261018-ABC123"},
            }),
        ])

        result = monnify.verify_transaction("MNFY|20261018|000001")

        assert calls[1][0] == "GET"
        assert calls[1][1].endswith("/api/v2/transactions/MNFY%7C20261018%7C000001")
        assert result.status == "success"
        assert result.amount == Decimal("34750.00")
        assert result.paid_at == dt.datetime(2026, 10, 18, 10, 15, tzinfo=dt.timezone.utc)
        assert result.metadata == {"order_number": "ORD-20261018-ABC123"}

    def test_pending_transaction(self, monnify, http):
        _, replies = http
        replies.extend([LOGIN, ok({"transactionReference": "T1", "paymentStatus": "PENDING"})])
        result = monnify.verify_transaction("T1")
        assert result.status == "pending"
        assert result.paid_at is None

    def test_lookup_by_payment_reference(self, monnify, http):
        calls, replies = http
        replies.extend([
            LOGIN,
            ok({
                "transactionReference": "MNFY|20261018|000001",
                "paymentReference": "MSO-20261018-BUL1GT-591ADF",
                "amountPaid": "56437.50",
                "paymentStatus": "PAID",
            }),
        ])

        result = monnify.verify_payment_reference("MSO-20261018-BUL1GT-591ADF")

        assert calls[1][0] == "GET"
        assert calls[1][1].endswith(
            "/api/v2/merchant/transactions/query?paymentReference=MSO-20261018-BUL1GT-591ADF"
        )
        assert result.status == "success"
        assert result.reference == "MNFY|20261018|000001"


class TestWebhook:
    BODY = json.dumps({
        "eventType": "SUCCESSFUL_TRANSACTION",
        "eventData": {
            "transactionReference": "MNFY|20261018|000001",
            "paymentReference": "ORD-20261018-ABC123",
            "amountPaid": 34750,
            "paymentStatus": "PAID",
        },
    }).encode()

    def test_valid_signature(self, monnify):
        assert monnify.validate_webhook_signature(self.BODY, sign(self.BODY))

    def test_signature_is_case_insensitive_hex(self, monnify):
        assert monnify.validate_webhook_signature(self.BODY, sign(self.BODY).upper())

    def test_wrong_secret_rejected(self, monnify):
        assert not monnify.validate_webhook_signature(self.BODY, sign(self.BODY, secret="other"))

    def test_tampered_body_rejected(self, monnify):
        signature = sign(self.BODY)
        assert not monnify.validate_webhook_signature(self.BODY.replace(b"34750", b"1"), signature)

    def test_missing_signature_rejected(self, monnify):
        assert not monnify.validate_webhook_signature(self.BODY, None)
        assert not monnify.validate_webhook_signature(self.BODY, "")

    def test_parse_successful_transaction(self, monnify):
        result = monnify.parse_webhook(self.BODY)
        assert result.status == "success"
        assert result.reference == "MNFY|20261018|000001"
        assert result.payment_reference == "ORD-20261018-ABC123"
        assert result.amount == Decimal("34750.00")

    def test_successful_event_without_status_counts_as_paid(self, monnify):
        body = json.dumps({
            "eventType": "SUCCESSFUL_TRANSACTION",
            "eventData": {"transactionReference": "T1", "paymentReference": "P1"},
        }).encode()
        assert monnify.parse_webhook(body).status == "success"

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            json.dumps({"eventType": "SUCCESSFUL_TRANSACTION"}).encode(),
            json.dumps({"eventType": "SUCCESSFUL_TRANSACTION", "eventData": {"paymentReference": "P1"}}).encode(),
        ],
    )
    def test_malformed_webhook_rejected(self, monnify, body):
        with pytest.raises(ValidationError):
            monnify.parse_webhook(body)
