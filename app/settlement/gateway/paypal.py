"""
PayPal REST client for order, capture, refund and payout operations.

Implements GatewayClient against the PayPal Orders v2 and Payouts v1 APIs
over requests. OAuth2 client-credentials tokens are cached in-process and
refreshed ahead of expiry; a single lock makes sure concurrent callers that
all notice an expired token trigger only one token request.

Failure handling:
    - Every request carries a bounded timeout
    - Reads (status lookups) are retried once with backoff on retryable errors
    - Writes are never retried here; the caller decides, with an
      idempotency key, whether to try again
    - A 401 on an API call drops the cached token and replays the call once
      with a fresh token (the gateway did not act on the rejected call)
    - HTTP and network errors are translated into the GatewayError family
    - A cache-backed circuit breaker fails fast while the gateway is down

Usage:
    client = PayPalGatewayClient.from_settings()
    order = client.create_order(
        amount=Decimal("105.00"),
        currency="USD",
        metadata=OrderMetadata(custom_id=str(tx.id), reference_id=str(offer.id)),
        idempotency_key=IdempotencyKeyGenerator.generate("create_order", tx.id),
    )
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from core.circuit_breaker import CircuitBreaker
from settlement.exceptions import (
    GatewayAuthenticationError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRateLimitError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    SettlementValidationError,
)
from settlement.fees import format_money
from settlement.gateway.base import (
    CaptureResult,
    GatewayClient,
    OrderMetadata,
    OrderResult,
    OrderStatusResult,
    PayoutResult,
    RefundResult,
    ReleaseResult,
    WebhookSignature,
    backoff_delay,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

logger = logging.getLogger(__name__)


SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

# 422 issues meaning the payer's funding source refused the charge
DECLINE_ISSUES = frozenset(
    {
        "INSTRUMENT_DECLINED",
        "PAYER_ACTION_REQUIRED",
        "PAYER_CANNOT_PAY",
        "TRANSACTION_REFUSED",
        "CARD_EXPIRED",
        "COMPLIANCE_VIOLATION",
        "MAX_NUMBER_OF_PAYMENT_ATTEMPTS_EXCEEDED",
    }
)

ALREADY_CAPTURED_ISSUES = frozenset({"ORDER_ALREADY_CAPTURED"})


# =============================================================================
# Access Token Cache
# =============================================================================


class AccessTokenCache:
    """
    Thread-safe cache for a single bearer token.

    The token is considered stale refresh_margin seconds before the expiry
    the gateway announced. Refreshing happens under a lock with a
    re-check, so N threads finding a stale token cause one fetch.

    Example:
        cache = AccessTokenCache(refresh_margin=60)
        token = cache.get(fetch=client._fetch_token)
    """

    def __init__(
        self,
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._refresh_at = 0.0

    def _current(self) -> str | None:
        token = self._token
        if token is not None and self._clock() < self._refresh_at:
            return token
        return None

    def get(self, fetch: Callable[[], tuple[str, float]]) -> str:
        """Return a valid token, calling fetch() at most once per expiry."""
        token = self._current()
        if token is not None:
            return token

        with self._lock:
            token = self._current()
            if token is not None:
                return token
            token, expires_in = fetch()
            # Never let the margin eat the whole lifetime of a short-lived token
            lifetime = max(expires_in - self.refresh_margin, expires_in / 2)
            self._token = token
            self._refresh_at = self._clock() + lifetime
            return token

    def invalidate(self, token: str | None = None) -> None:
        """Drop the cached token (only if it is still `token`, when given)."""
        with self._lock:
            if token is None or token == self._token:
                self._token = None
                self._refresh_at = 0.0


# =============================================================================
# PayPal Client
# =============================================================================


class PayPalGatewayClient(GatewayClient):
    """
    GatewayClient implementation for PayPal.

    One instance is meant to be shared per process (see
    settlement.gateway.get_gateway_client) so the token cache is shared.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        timeout: float = 10.0,
        token_refresh_margin: float = 60.0,
        max_read_retries: int = 1,
        payout_email_subject: str = "You have a payout",
        session: requests.Session | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        base_url: str | None = None,
    ):
        if not client_id or not client_secret:
            raise ImproperlyConfigured("PayPal client id and secret are required")
        if mode not in ("sandbox", "live"):
            raise ImproperlyConfigured(f"Unknown PayPal mode: {mode!r}")

        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.base_url = (
            base_url or (LIVE_BASE_URL if mode == "live" else SANDBOX_BASE_URL)
        ).rstrip("/")
        self.timeout = timeout
        self.max_read_retries = max_read_retries
        self.payout_email_subject = payout_email_subject
        self.session = session or requests.Session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="paypal-api")
        self.tokens = AccessTokenCache(refresh_margin=token_refresh_margin)

    @classmethod
    def from_settings(cls) -> PayPalGatewayClient:
        return cls(
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_CLIENT_SECRET,
            mode=settings.PAYPAL_MODE,
            timeout=settings.PAYPAL_API_TIMEOUT_SECONDS,
            token_refresh_margin=settings.PAYPAL_TOKEN_REFRESH_MARGIN_SECONDS,
            max_read_retries=settings.PAYPAL_MAX_READ_RETRIES,
            payout_email_subject=settings.PAYPAL_PAYOUT_EMAIL_SUBJECT,
            circuit_breaker=CircuitBreaker(
                name="paypal-api",
                failure_threshold=settings.PAYPAL_CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=settings.PAYPAL_CIRCUIT_RECOVERY_TIMEOUT,
            ),
        )

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        metadata: OrderMetadata,
        idempotency_key: str,
    ) -> OrderResult:
        body = self._order_body(amount, currency, metadata)
        with self._logged("create_order", custom_id=metadata.custom_id):
            data = self._request(
                "POST",
                "/v2/checkout/orders",
                "create_order",
                payload=body,
                idempotency_key=idempotency_key,
            )
            return self._order_result(data)

    def create_marketplace_order(
        self,
        amount: Decimal,
        currency: str,
        payee_merchant_id: str,
        platform_fee: Decimal,
        metadata: OrderMetadata,
        idempotency_key: str,
    ) -> OrderResult:
        if not payee_merchant_id:
            raise SettlementValidationError("payee_merchant_id is required")
        if platform_fee < 0 or platform_fee > amount:
            raise SettlementValidationError(
                "platform_fee must be between 0 and the order amount",
                details={"platform_fee": str(platform_fee), "amount": str(amount)},
            )

        body = self._order_body(amount, currency, metadata)
        unit = body["purchase_units"][0]
        total = self._money(amount, currency)
        unit["amount"]["breakdown"] = {"item_total": total}
        unit["items"] = [
            {
                "name": (metadata.item_name or metadata.description or "Service booking")[:127],
                "quantity": "1",
                "unit_amount": total,
            }
        ]
        unit["payee"] = {"merchant_id": payee_merchant_id}
        unit["payment_instruction"] = {
            "disbursement_mode": "DELAYED",
            "platform_fees": [{"amount": self._money(platform_fee, currency)}],
        }

        with self._logged(
            "create_marketplace_order",
            custom_id=metadata.custom_id,
            payee_merchant_id=payee_merchant_id,
        ):
            data = self._request(
                "POST",
                "/v2/checkout/orders",
                "create_marketplace_order",
                payload=body,
                idempotency_key=idempotency_key,
            )
            return self._order_result(data)

    def capture_order(self, order_id: str, idempotency_key: str) -> CaptureResult:
        with self._logged("capture_order", order_id=order_id):
            try:
                data = self._request(
                    "POST",
                    f"/v2/checkout/orders/{quote(order_id, safe='')}/capture",
                    "capture_order",
                    payload={},
                    idempotency_key=idempotency_key,
                )
            except GatewayRequestError as exc:
                if exc.issue not in ALREADY_CAPTURED_ISSUES:
                    raise
                existing = self.get_order_status(order_id)
                if not existing.capture_id:
                    raise
                logger.info(
                    "Order already captured, returning existing capture",
                    extra={"order_id": order_id, "capture_id": existing.capture_id},
                )
                return CaptureResult(
                    order_id=order_id,
                    capture_id=existing.capture_id,
                    status=existing.capture_status or "",
                    amount=existing.capture_amount,
                    currency=existing.capture_currency,
                    raw_response=existing.raw_response,
                )
            return self._capture_result(order_id, data)

    def release_funds(self, order_id: str, idempotency_key: str) -> ReleaseResult:
        with self._logged("release_funds", order_id=order_id):
            data = self._request(
                "POST",
                f"/v2/checkout/orders/{quote(order_id, safe='')}/release-funds",
                "release_funds",
                payload={},
                idempotency_key=idempotency_key,
            )
            return ReleaseResult(
                order_id=order_id,
                status=data.get("status", "COMPLETED"),
                raw_response=data,
            )

    def get_order_status(self, order_id: str) -> OrderStatusResult:
        with self._logged("get_order_status", order_id=order_id):
            data = self._request(
                "GET",
                f"/v2/checkout/orders/{quote(order_id, safe='')}",
                "get_order_status",
                idempotent=True,
            )
            capture = self._first_capture(data) or {}
            amount = capture.get("amount") or {}
            return OrderStatusResult(
                order_id=data.get("id", order_id),
                status=data.get("status", ""),
                capture_id=capture.get("id"),
                capture_status=capture.get("status"),
                capture_amount=self._decimal(amount.get("value")),
                capture_currency=amount.get("currency_code"),
                raw_response=data,
            )

    # =========================================================================
    # Refunds and Payouts
    # =========================================================================

    def refund_capture(
        self,
        capture_id: str,
        idempotency_key: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        note: str = "",
    ) -> RefundResult:
        body: dict[str, Any] = {}
        if amount is not None:
            if not currency:
                raise SettlementValidationError("currency is required for a partial refund")
            body["amount"] = self._money(amount, currency)
        if note:
            body["note_to_payer"] = note[:255]

        with self._logged("refund_capture", capture_id=capture_id):
            data = self._request(
                "POST",
                f"/v2/payments/captures/{quote(capture_id, safe='')}/refund",
                "refund_capture",
                payload=body,
                idempotency_key=idempotency_key,
            )
            if not data.get("id"):
                raise GatewayError(
                    "Refund response did not include a refund id",
                    details={"operation": "refund_capture"},
                )
            refund_amount = data.get("amount") or {}
            return RefundResult(
                refund_id=data["id"],
                status=data.get("status", ""),
                amount=self._decimal(refund_amount.get("value")),
                currency=refund_amount.get("currency_code"),
                raw_response=data,
            )

    def create_payout(
        self,
        email: str,
        amount: Decimal,
        currency: str,
        note: str,
        sender_batch_id: str,
    ) -> PayoutResult:
        body = {
            "sender_batch_header": {
                "sender_batch_id": sender_batch_id,
                "email_subject": self.payout_email_subject,
                "email_message": note,
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {
                        "value": format_money(amount, currency),
                        "currency": currency.upper(),
                    },
                    "note": note,
                    "receiver": email,
                    "sender_item_id": sender_batch_id,
                }
            ],
        }
        with self._logged("create_payout", sender_batch_id=sender_batch_id):
            data = self._request(
                "POST",
                "/v1/payments/payouts",
                "create_payout",
                payload=body,
                idempotency_key=sender_batch_id,
            )
            return self._payout_result(data)

    def get_payout_status(self, batch_id: str) -> PayoutResult:
        with self._logged("get_payout_status", batch_id=batch_id):
            data = self._request(
                "GET",
                f"/v1/payments/payouts/{quote(batch_id, safe='')}",
                "get_payout_status",
                idempotent=True,
            )
            return self._payout_result(data)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(
        self, signature: WebhookSignature, body: bytes, webhook_id: str
    ) -> bool:
        """
        Ask PayPal whether the webhook was signed by it.

        Uses the verify-webhook-signature endpoint, which checks the
        certificate chain on PayPal's side. An unreadable body or an
        incomplete signature fails without a gateway call.
        """
        if not webhook_id or not signature.is_complete:
            return False
        try:
            event = json.loads(body)
        except ValueError:
            return False

        with self._logged("verify_webhook_signature", transmission_id=signature.transmission_id):
            data = self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "verify_webhook_signature",
                payload={
                    "auth_algo": signature.auth_algo,
                    "cert_url": signature.cert_url,
                    "transmission_id": signature.transmission_id,
                    "transmission_sig": signature.transmission_sig,
                    "transmission_time": signature.transmission_time,
                    "webhook_id": webhook_id,
                    "webhook_event": event,
                },
                idempotent=True,
            )
            return data.get("verification_status") == "SUCCESS"

    # =========================================================================
    # Transport
    # =========================================================================

    def _fetch_token(self) -> tuple[str, float]:
        """Request a new client-credentials token. Returns (token, expires_in)."""
        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayTimeoutError(
                "Timed out requesting gateway access token",
                is_retryable=True,
                details={"operation": "oauth_token"},
            ) from exc
        except requests.RequestException as exc:
            raise GatewayUnavailableError(
                f"Could not reach gateway for access token: {exc}",
                details={"operation": "oauth_token"},
            ) from exc

        if response.status_code >= 400:
            raise self._error_from_response(response, "oauth_token")

        payload = self._json(response)
        token = payload.get("access_token")
        if not token:
            raise GatewayAuthenticationError(
                "Token response did not include an access token",
                details={"operation": "oauth_token"},
            )
        logger.info("Obtained gateway access token", extra={"mode": self.mode})
        return token, float(payload.get("expires_in", 3600))

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        idempotent: bool = False,
    ) -> dict[str, Any]:
        """Send a request, retrying idempotent reads on retryable errors."""
        retries = self.max_read_retries if idempotent else 0
        attempt = 0
        while True:
            try:
                return self._send(
                    method, path, operation, payload, idempotency_key, idempotent
                )
            except GatewayError as exc:
                if attempt >= retries or not exc.is_retryable:
                    raise
                delay = backoff_delay(attempt)
                logger.warning(
                    f"Retrying gateway {operation} in {delay:.2f}s",
                    extra={"operation": operation, "attempt": attempt + 1},
                )
                time.sleep(delay)
                attempt += 1

    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        payload: dict[str, Any] | None,
        idempotency_key: str | None,
        idempotent: bool,
    ) -> dict[str, Any]:
        if not self.circuit_breaker.is_available():
            raise GatewayUnavailableError(
                "Payment gateway circuit is open",
                details={"operation": operation},
            )
        try:
            response = self._authorized_call(
                method, path, operation, payload, idempotency_key, idempotent
            )
        except (GatewayUnavailableError, GatewayTimeoutError):
            self.circuit_breaker.record_failure()
            raise

        if response.status_code < 400:
            self.circuit_breaker.record_success()
            return self._json(response)

        error = self._error_from_response(response, operation)
        if isinstance(error, GatewayUnavailableError):
            self.circuit_breaker.record_failure()
        else:
            self.circuit_breaker.record_success()
        raise error

    def _authorized_call(
        self,
        method: str,
        path: str,
        operation: str,
        payload: dict[str, Any] | None,
        idempotency_key: str | None,
        idempotent: bool,
    ) -> requests.Response:
        for auth_attempt in range(2):
            token = self.tokens.get(self._fetch_token)
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if idempotency_key:
                headers["PayPal-Request-Id"] = idempotency_key
            try:
                response = self.session.request(
                    method,
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.Timeout as exc:
                raise GatewayTimeoutError(
                    f"Gateway {operation} timed out after {self.timeout}s",
                    is_retryable=idempotent,
                    details={"operation": operation},
                ) from exc
            except requests.RequestException as exc:
                raise GatewayUnavailableError(
                    f"Gateway {operation} failed: {exc}",
                    details={"operation": operation},
                ) from exc

            if response.status_code == 401 and auth_attempt == 0:
                logger.info(
                    "Gateway rejected access token, refreshing",
                    extra={"operation": operation},
                )
                self.tokens.invalidate(token)
                continue
            return response
        return response

    # =========================================================================
    # Helpers
    # =========================================================================

    @contextmanager
    def _logged(self, operation: str, **context) -> Generator[None, None, None]:
        log_context = {"gateway": "paypal", "operation": operation, **context}
        start_time = time.time()
        logger.info(f"Starting {operation} operation", extra=log_context)
        try:
            yield
        except GatewayError as exc:
            logger.error(
                f"{operation} failed: {exc}",
                extra={
                    **log_context,
                    "error_code": exc.error_code,
                    "retryable": exc.is_retryable,
                    "debug_id": exc.debug_id,
                    "duration_ms": (time.time() - start_time) * 1000,
                },
            )
            raise
        logger.info(
            f"{operation} completed",
            extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
        )

    @staticmethod
    def _error_from_response(response: requests.Response, operation: str) -> GatewayError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        name = body.get("name") or body.get("error")
        message = (
            body.get("message")
            or body.get("error_description")
            or response.reason
            or "unknown error"
        )
        issue = None
        detail_list = body.get("details") or []
        if detail_list and isinstance(detail_list[0], dict):
            issue = detail_list[0].get("issue")

        status = response.status_code
        kwargs = {
            "gateway_name": name,
            "issue": issue,
            "debug_id": body.get("debug_id"),
            "status_code": status,
            "details": {"operation": operation},
        }
        text = f"Gateway {operation} failed: {message}"

        if status == 401:
            return GatewayAuthenticationError(text, **kwargs)
        if status == 429:
            return GatewayRateLimitError(text, **kwargs)
        if status >= 500:
            return GatewayUnavailableError(text, **kwargs)
        if status == 422 and issue in DECLINE_ISSUES:
            return GatewayDeclinedError(text, **kwargs)
        return GatewayRequestError(text, **kwargs)

    @staticmethod
    def _json(response: requests.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Gateway returned a non-JSON response",
                status_code=response.status_code,
            ) from exc
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _money(amount: Decimal, currency: str) -> dict[str, str]:
        return {"currency_code": currency.upper(), "value": format_money(amount, currency)}

    @staticmethod
    def _decimal(value) -> Decimal | None:
        if value in (None, ""):
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    def _order_body(
        self, amount: Decimal, currency: str, metadata: OrderMetadata
    ) -> dict[str, Any]:
        if amount <= 0:
            raise SettlementValidationError(
                "Order amount must be positive", details={"amount": str(amount)}
            )
        body: dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": metadata.reference_id,
                    "custom_id": metadata.custom_id,
                    "description": metadata.description,
                    "amount": self._money(amount, currency),
                }
            ],
        }
        if metadata.return_url or metadata.cancel_url:
            context = {"user_action": "PAY_NOW"}
            if metadata.return_url:
                context["return_url"] = metadata.return_url
            if metadata.cancel_url:
                context["cancel_url"] = metadata.cancel_url
            body["application_context"] = context
        return body

    @staticmethod
    def _order_result(data: dict[str, Any]) -> OrderResult:
        if not data.get("id"):
            raise GatewayError(
                "Order response did not include an order id",
                details={"operation": "create_order"},
            )
        approve_url = None
        for link in data.get("links") or []:
            if link.get("rel") in ("approve", "payer-action"):
                approve_url = link.get("href")
                break
        return OrderResult(
            order_id=data["id"],
            status=data.get("status", ""),
            approve_url=approve_url,
            raw_response=data,
        )

    @staticmethod
    def _first_capture(data: dict[str, Any]) -> dict[str, Any] | None:
        units = data.get("purchase_units") or []
        if not units:
            return None
        captures = (units[0].get("payments") or {}).get("captures") or []
        return captures[0] if captures else None

    def _capture_result(self, order_id: str, data: dict[str, Any]) -> CaptureResult:
        capture = self._first_capture(data)
        if not capture or not capture.get("id"):
            raise GatewayError(
                "Capture response did not include a capture",
                details={"operation": "capture_order", "order_id": order_id},
            )
        amount = capture.get("amount") or {}
        return CaptureResult(
            order_id=data.get("id", order_id),
            capture_id=capture["id"],
            status=capture.get("status") or data.get("status", ""),
            amount=self._decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            raw_response=data,
        )

    @staticmethod
    def _payout_result(data: dict[str, Any]) -> PayoutResult:
        header = data.get("batch_header") or {}
        if not header.get("payout_batch_id"):
            raise GatewayError(
                "Payout response did not include a batch id",
                details={"operation": "create_payout"},
            )
        items = data.get("items") or []
        item_status = items[0].get("transaction_status") if items else None
        return PayoutResult(
            batch_id=header["payout_batch_id"],
            status=header.get("batch_status", ""),
            item_status=item_status,
            raw_response=data,
        )
