from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from eventlens.core.errors import ProviderError
from eventlens.core.settings import settings
from eventlens.models.payment import Payment
from eventlens.services.payments.common import (
    COMPLETED,
    PaymentProvider,
    StatusResult,
    StripeStatus,
    is_free_ref,
    log_provider_event,
)

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def validate_email(email: Optional[str]) -> Optional[str]:
    if not email or not isinstance(email, str):
        return None
    candidate = email.strip().lower()
    return candidate if _EMAIL.match(candidate) else None


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class StripeAdapter(PaymentProvider):
    name = "stripe"

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None, policy=None):
        super().__init__(policy)
        self.api_key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
        self.timeout = float(timeout or settings.PROVIDER_TIMEOUT_SECONDS)

    def _configure(self) -> None:
        if not self.api_key:
            raise ProviderError("Stripe secret key not configured", provider=self.name)
        stripe.api_key = self.api_key
        # Charge creation must not be retried behind our back
        stripe.max_network_retries = 0
        if not isinstance(stripe.default_http_client, stripe.RequestsClient):
            stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def _wrap(self, e: stripe.StripeError, action: str) -> ProviderError:
        retryable = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError))
        logger.warning(
            "payments.stripe.error",
            extra={"action": action, "code": getattr(e, "code", None), "error": str(e)},
        )
        return ProviderError(
            f"Stripe {action} failed",
            provider=self.name,
            retryable=retryable,
            provider_detail=getattr(e, "user_message", None) or str(e),
        )

    def _customer_for(self, email: Optional[str], metadata: Dict[str, str]) -> Optional[str]:
        """Find or create a Stripe customer by e-mail; failures are not fatal."""
        valid = validate_email(email)
        if not valid:
            return None
        try:
            found = stripe.Customer.list(email=valid, limit=1)
            data = _get(found, "data", []) or []
            if data:
                return str(_get(data[0], "id"))
            customer = stripe.Customer.create(email=valid, metadata={"userId": metadata.get("userId", "")})
            return str(_get(customer, "id"))
        except stripe.StripeError as e:
            logger.warning("payments.stripe.customer_error", extra={"error": str(e)})
            return None

    def _create_remote(self, amount_cents, description, metadata, email, idempotency_key):
        self._configure()
        customer_id = self._customer_for(email, metadata)
        params: Dict[str, Any] = {
            "amount": int(amount_cents),
            "currency": self.currency,
            "description": description,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        receipt = validate_email(email)
        if receipt:
            params["receipt_email"] = receipt
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise self._wrap(e, "intent creation") from e
        return {
            "ref": _get(intent, "id"),
            "status": StripeStatus(str(_get(intent, "status") or "")),
            "client_secret": _get(intent, "client_secret"),
            "customer": customer_id,
        }

    def _fetch_remote(self, payment: Payment) -> Dict[str, Any]:
        self._configure()
        try:
            intent = stripe.PaymentIntent.retrieve(payment.PaymentID)
        except stripe.StripeError as e:
            raise self._wrap(e, "status lookup") from e
        return {
            "status": StripeStatus(str(_get(intent, "status") or "")),
            "amount_cents": int(_get(intent, "amount") or 0),
        }

    def _refund_remote(self, payment: Payment, reason: str) -> Dict[str, Any]:
        self._configure()
        stripe_reason = reason if reason in _REFUND_REASONS else "requested_by_customer"
        try:
            refund = stripe.Refund.create(
                payment_intent=payment.PaymentID,
                reason=stripe_reason,
                metadata={"note": reason[:500]} if reason else {},
            )
        except stripe.StripeError as e:
            raise self._wrap(e, "refund") from e
        return {"refund_id": _get(refund, "id"), "status": _get(refund, "status")}

    def confirm(
        self,
        db: Session,
        provider_ref: str,
        user_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> StatusResult:
        """Finalize a PaymentIntent. Already-succeeded intents return as-is."""
        if is_free_ref(provider_ref):
            payment = self.get_payment(db, provider_ref)
            return self._status_result(payment)
        payment = self.get_payment(db, provider_ref)
        self._check_owner(payment, user_id)
        if payment.Status == COMPLETED:
            return self._status_result(payment)

        self._configure()
        try:
            intent = stripe.PaymentIntent.retrieve(payment.PaymentID)
        except stripe.StripeError as e:
            raise self._wrap(e, "confirmation") from e

        status = str(_get(intent, "status") or "")
        if status in ("requires_payment_method", "requires_confirmation") and (
            payment_method_id or status == "requires_confirmation"
        ):
            params: Dict[str, Any] = {
                "return_url": f"{settings.FRONTEND_URL.rstrip('/')}/payment-success"
            }
            if payment_method_id:
                params["payment_method"] = payment_method_id
            try:
                intent = stripe.PaymentIntent.confirm(payment.PaymentID, **params)
            except stripe.InvalidRequestError as e:
                if getattr(e, "code", None) != "payment_intent_unexpected_state":
                    self._record_failure(db, payment, e)
                    raise self._wrap(e, "confirmation") from e
                # Confirmed concurrently elsewhere; report whatever Stripe has now
                try:
                    intent = stripe.PaymentIntent.retrieve(payment.PaymentID)
                except stripe.StripeError as inner:
                    raise self._wrap(inner, "confirmation") from inner
            except stripe.CardError as e:
                self._record_failure(db, payment, e)
                raise self._wrap(e, "confirmation") from e
            except stripe.StripeError as e:
                # Timeouts leave the ledger pending for a later status poll
                raise self._wrap(e, "confirmation") from e

        self._apply_status(payment, StripeStatus(str(_get(intent, "status") or "")))
        log_provider_event(
            db, self.name, "confirmed", payment.PaymentID, payment.UserID, {"status": payment.ProviderStatus}
        )
        db.commit()
        audit.info(
            "payments.stripe.confirmed",
            extra={"provider_ref": payment.PaymentID, "status": payment.Status},
        )
        return self._status_result(payment)

    def _record_failure(self, db: Session, payment: Payment, error: Exception) -> None:
        payment.Status = "failed"
        log_provider_event(db, self.name, "confirm_failed", payment.PaymentID, payment.UserID, error=str(error))
        db.commit()
