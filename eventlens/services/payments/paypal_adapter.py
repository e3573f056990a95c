"""PayPal Orders v2 over plain REST.

Orders are created with ``intent=CAPTURE`` and captured once the buyer has
approved them. Refunds go against the capture id recorded at capture time.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from eventlens.core.errors import ProviderError, ValidationError
from eventlens.core.settings import settings
from eventlens.models.payment import Payment
from eventlens.services.payments.common import (
    COMPLETED,
    REFUNDED,
    PaymentProvider,
    PayPalStatus,
    StatusResult,
    is_free_ref,
    log_provider_event,
)
from eventlens.services.pricing import from_cents, to_cents

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

SANDBOX_BASE = "https://api-m.sandbox.paypal.com"
LIVE_BASE = "https://api-m.paypal.com"


def _base_url(mode: str) -> str:
    return LIVE_BASE if (mode or "").lower() == "live" else SANDBOX_BASE


class PayPalAdapter(PaymentProvider):
    name = "paypal"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        mode: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        policy=None,
    ):
        super().__init__(policy)
        self.client_id = settings.PAYPAL_CLIENT_ID if client_id is None else client_id
        self.client_secret = settings.PAYPAL_CLIENT_SECRET if client_secret is None else client_secret
        self.base_url = _base_url(mode or settings.PAYPAL_MODE)
        self.http = http or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    # HTTP plumbing

    def _token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ProviderError("PayPal credentials not configured", provider=self.name)
        data = self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            authorized=False,
        )
        token = data.get("access_token")
        if not token:
            raise ProviderError("PayPal did not return an access token", provider=self.name)
        return str(token)

    def _request(self, method: str, path: str, authorized: bool = True, **kwargs: Any) -> Dict[str, Any]:
        headers = dict(kwargs.pop("headers", {}) or {})
        headers.setdefault("Accept", "application/json")
        if authorized:
            headers["Authorization"] = f"Bearer {self._token()}"
        try:
            resp = self.http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError("PayPal request timed out", provider=self.name, retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                "PayPal request failed", provider=self.name, retryable=True, provider_detail=str(e)
            ) from e
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"message": resp.text}
            logger.warning(
                "payments.paypal.http_error",
                extra={"path": path, "status_code": resp.status_code, "issue": body.get("name")},
            )
            raise ProviderError(
                f"PayPal request failed ({resp.status_code})",
                provider=self.name,
                retryable=resp.status_code >= 500,
                provider_detail=body.get("message") or body.get("name"),
            )
        if not resp.content:
            return {}
        return resp.json()

    # Remote hooks

    def _create_remote(self, amount_cents, description, metadata, email, idempotency_key):
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": self.currency.upper(),
                        "value": f"{from_cents(amount_cents):.2f}",
                    },
                    "description": description[:127],
                    "custom_id": metadata.get("eventId") or metadata.get("planId", ""),
                }
            ],
            "application_context": {
                "return_url": f"{settings.FRONTEND_URL.rstrip('/')}/payment-success",
                "cancel_url": f"{settings.FRONTEND_URL.rstrip('/')}/payment-cancelled",
                "user_action": "PAY_NOW",
            },
        }
        headers = {"PayPal-Request-Id": idempotency_key} if idempotency_key else {}
        order = self._request("POST", "/v2/checkout/orders", json=body, headers=headers)
        approval = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        return {
            "ref": order.get("id"),
            "status": PayPalStatus(str(order.get("status") or "")),
            "approval_url": approval,
        }

    def _fetch_remote(self, payment: Payment) -> Dict[str, Any]:
        order = self._request("GET", f"/v2/checkout/orders/{payment.PaymentID}")
        units = order.get("purchase_units") or [{}]
        value = (units[0].get("amount") or {}).get("value")
        return {
            "status": PayPalStatus(str(order.get("status") or "")),
            "amount_cents": to_cents(value) if value is not None else None,
        }

    def _refund_remote(self, payment: Payment, reason: str) -> Dict[str, Any]:
        if not payment.CaptureID:
            raise ValidationError(
                "Capture ID not found. Payment may not be completed.", violations=["captureId"]
            )
        refund = self._request(
            "POST",
            f"/v2/payments/captures/{payment.CaptureID}/refund",
            json={"note_to_payer": (reason or "Customer requested refund")[:255]},
        )
        return {"refund_id": refund.get("id"), "status": refund.get("status")}

    def capture(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        """Capture an approved order; capturing a completed order is a no-op."""
        payment = self.get_payment(db, provider_ref)
        self._check_owner(payment, user_id)
        # APPROVED already counts as completed, but only a capture id means the money moved
        if is_free_ref(payment.PaymentID) or payment.Status == REFUNDED or (
            payment.Status == COMPLETED and payment.CaptureID
        ):
            return self._status_result(payment)

        try:
            order = self._request(
                "POST",
                f"/v2/checkout/orders/{payment.PaymentID}/capture",
                json={},
                headers={"Content-Type": "application/json"},
            )
        except ProviderError as e:
            log_provider_event(db, self.name, "capture_error", payment.PaymentID, payment.UserID, error=e.message)
            db.commit()
            raise

        captures = [
            c
            for unit in order.get("purchase_units") or []
            for c in ((unit.get("payments") or {}).get("captures") or [])
        ]
        if captures:
            payment.CaptureID = captures[0].get("id")
        self._apply_status(payment, PayPalStatus(str(order.get("status") or "")))
        log_provider_event(
            db,
            self.name,
            "captured",
            payment.PaymentID,
            payment.UserID,
            {"status": order.get("status"), "captureId": payment.CaptureID},
        )
        db.commit()
        audit.info(
            "payments.paypal.captured",
            extra={"provider_ref": payment.PaymentID, "capture_id": payment.CaptureID, "status": payment.Status},
        )
        return self._status_result(payment)

    def confirm(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        return self.capture(db, provider_ref, user_id)
