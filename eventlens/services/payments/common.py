"""Shared plumbing for the payment provider adapters.

Every adapter prices orders the same way (plan price, discount, trust
policy, minimum charge) and keeps the same local ledger (`Payment` rows keyed
by provider reference). Provider status strings are converted to the
internal vocabulary here and nowhere else.
"""
from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from sqlalchemy.orm import Session

from eventlens.core.errors import (
    AuthorizationError,
    NotFoundError,
    ProviderError,
    TemporalError,
    ValidationError,
)
from eventlens.core.settings import settings
from eventlens.models.event import Event
from eventlens.models.payment import Payment, PaymentLog
from eventlens.services import audit as audit_sink
from eventlens.services.discounts import DiscountApplication, normalize_code, quote_discount
from eventlens.services.plan_schema import CustomPlan, dump_custom_plan, parse_custom_plan
from eventlens.services.pricing import (
    PlanTerms,
    PriceDecision,
    PriceTrustPolicy,
    compute_price,
    from_cents,
    load_plan,
    to_cents,
)
from eventlens.services.temporal import is_event_active

audit = logging.getLogger("audit")
logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"

T = TypeVar("T")


# Provider status vocabularies. Adapters wrap raw provider values in one of
# these and store only the normalized result on the ledger.


@dataclass(frozen=True)
class StripeStatus:
    value: str

    def normalized(self) -> str:
        if self.value == "succeeded":
            return COMPLETED
        if self.value == "canceled":
            return FAILED
        return PENDING


@dataclass(frozen=True)
class PayPalStatus:
    value: str

    def normalized(self) -> str:
        v = (self.value or "").upper()
        if v in ("COMPLETED", "APPROVED"):
            return COMPLETED
        if v in ("VOIDED", "DECLINED", "FAILED", "DENIED"):
            return FAILED
        return PENDING


@dataclass(frozen=True)
class RevenueCatStatus:
    entitlement_active: bool

    def normalized(self) -> str:
        return COMPLETED if self.entitlement_active else FAILED


@dataclass(frozen=True)
class FreeStatus:
    def normalized(self) -> str:
        return COMPLETED


ProviderStatus = Union[StripeStatus, PayPalStatus, RevenueCatStatus, FreeStatus]


@dataclass
class OrderQuote:
    plan: PlanTerms
    custom_plan: CustomPlan
    original_cents: int
    discount: Optional[DiscountApplication]
    decision: PriceDecision

    @property
    def amount_cents(self) -> int:
        return self.decision.amount_cents

    @property
    def discount_cents(self) -> int:
        return self.discount.discount_cents if self.discount else 0


@dataclass
class UpgradeQuote:
    event: Event
    plan: PlanTerms
    custom_plan: CustomPlan
    existing_cents: int
    new_total_cents: int
    delta_cents: int
    charge_cents: int


@dataclass
class IntentResult:
    provider_ref: str
    provider: str
    amount_cents: int
    currency: str
    is_free: bool
    status: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    original_cents: int = 0
    discount_cents: int = 0
    upgrade_delta_cents: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "providerRef": self.provider_ref,
            "provider": self.provider,
            "amount": float(from_cents(self.amount_cents)),
            "currency": self.currency,
            "isFreePlan": self.is_free,
            "status": self.status,
            "originalPrice": float(from_cents(self.original_cents)),
            "discountAmount": float(from_cents(self.discount_cents)),
        }
        if self.client_secret:
            out["clientSecret"] = self.client_secret
        if self.approval_url:
            out["approvalUrl"] = self.approval_url
        if self.upgrade_delta_cents is not None:
            out["upgradeDelta"] = float(from_cents(self.upgrade_delta_cents))
        return out


@dataclass
class StatusResult:
    provider_ref: str
    status: str
    provider_status: Optional[str]
    amount_cents: int
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providerRef": self.provider_ref,
            "status": self.status,
            "providerStatus": self.provider_status,
            "amount": float(from_cents(self.amount_cents)),
            "currency": self.currency,
        }


def new_free_ref() -> str:
    return f"free_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def is_free_ref(ref: Optional[str]) -> bool:
    return bool(ref) and str(ref).startswith("free_")


def client_cents(client_price: Any) -> Optional[int]:
    if client_price is None or client_price == "":
        return None
    try:
        cents = to_cents(client_price)
    except (ArithmeticError, ValueError) as e:
        raise ValidationError("finalPrice must be a number", violations=["finalPrice"]) from e
    if cents < 0:
        raise ValidationError("finalPrice cannot be negative", violations=["finalPrice"])
    return cents


def require_custom_plan(raw: Any) -> CustomPlan:
    custom_plan, errors = parse_custom_plan(raw)
    if custom_plan is None:
        raise ValidationError("Invalid customPlan", violations=errors)
    return custom_plan


def quote_order(
    db: Session,
    plan_id: str,
    custom_plan: CustomPlan,
    client_price: Any,
    discount_code: Any,
    policy: PriceTrustPolicy,
    context: Optional[dict] = None,
) -> OrderQuote:
    """Server price for an order after discount and the client-price rules."""
    plan = PlanTerms.from_row(load_plan(db, plan_id))
    original = compute_price(plan, custom_plan)
    code = normalize_code(discount_code)
    discount = quote_discount(db, code, original) if code else None
    server_cents = discount.final_cents if discount else original
    decision = policy.resolve_charge(
        server_cents,
        client_cents(client_price),
        has_discount=discount is not None,
        context={**(context or {}), "plan_id": plan_id, "discount_code": code},
    )
    return OrderQuote(plan, custom_plan, original, discount, decision)


def quote_upgrade(
    db: Session,
    user_id: str,
    event_id: str,
    new_plan_id: str,
    new_custom_plan: CustomPlan,
    client_upgrade_price: Any,
    policy: PriceTrustPolicy,
) -> UpgradeQuote:
    """Delta pricing for moving an active event onto a bigger plan.

    The charge is the client-declared upgrade price when the policy trusts
    it; the server-side delta is only used to reject downgrades.
    """
    event = db.query(Event).filter(Event.EventID == str(event_id)).first()
    if not event:
        raise NotFoundError("Event not found", resource="event")
    if str(event.UserID) != str(user_id):
        raise AuthorizationError("Only the event owner can upgrade this event")
    if not is_event_active(event):
        raise TemporalError("Cannot upgrade an event that has ended", TemporalError.EVENT_ENDED)

    plan = PlanTerms.from_row(load_plan(db, new_plan_id))
    new_total = compute_price(plan, new_custom_plan)
    existing = to_cents(event.FinalPrice)
    delta = new_total - existing
    if delta < 0:
        raise ValidationError(
            "Upgrade cannot reduce the event price",
            violations=[f"new total {from_cents(new_total)} is below current {from_cents(existing)}"],
        )
    declared = client_cents(client_upgrade_price)
    if declared is not None and policy.trust_upgrade_client_price:
        charge = declared
    else:
        charge = delta
    if delta <= 0:
        charge = 0
    return UpgradeQuote(
        event=event,
        plan=plan,
        custom_plan=new_custom_plan,
        existing_cents=existing,
        new_total_cents=new_total,
        delta_cents=delta,
        charge_cents=policy.clamp_minimum(max(0, charge)),
    )


def log_provider_event(
    db: Session,
    provider: str,
    event_type: str,
    payment_id: Optional[str] = None,
    user_id: Optional[str] = None,
    payload: Any = None,
    error: Optional[str] = None,
) -> None:
    db.add(
        PaymentLog(
            PaymentID=payment_id,
            UserID=user_id,
            Provider=provider,
            EventType=event_type,
            Payload=json.dumps(payload, default=str) if payload is not None else None,
            ErrorMessage=error,
        )
    )


def call_with_retry(fn: Callable[[], T], provider: str, retries: int = 1) -> T:
    """Run an idempotent provider read, retrying once on a retryable failure."""
    attempt = 0
    while True:
        try:
            return fn()
        except ProviderError as e:
            if not e.retryable or attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "payments.poll.retry", extra={"provider": provider, "attempt": attempt}
            )


class PaymentProvider(ABC):
    """Template for one provider: pricing and ledger handling live here,
    subclasses implement the remote calls.
    """

    name = "provider"

    def __init__(self, policy: Optional[PriceTrustPolicy] = None):
        self.policy = policy or PriceTrustPolicy.from_settings(settings)
        self.currency = (getattr(settings, "STRIPE_CURRENCY", "usd") or "usd").lower()

    # Remote hooks

    @abstractmethod
    def _create_remote(
        self, amount_cents: int, description: str, metadata: Dict[str, str], email: Optional[str], idempotency_key: Optional[str]
    ) -> Dict[str, Any]:
        """Return ``{"ref", "status": ProviderStatus, "client_secret"?, "approval_url"?, "customer"?}``."""
        raise NotImplementedError

    @abstractmethod
    def _fetch_remote(self, payment: Payment) -> Dict[str, Any]:
        """Return ``{"status": ProviderStatus, "amount_cents"?: int}``."""
        raise NotImplementedError

    @abstractmethod
    def _refund_remote(self, payment: Payment, reason: str) -> Dict[str, Any]:
        raise NotImplementedError

    # Ledger helpers

    def get_payment(self, db: Session, provider_ref: str) -> Payment:
        payment = db.query(Payment).filter(Payment.PaymentID == str(provider_ref)).first()
        if not payment:
            raise NotFoundError("Payment not found", resource="payment")
        return payment

    def _apply_status(self, payment: Payment, status: ProviderStatus) -> bool:
        """Copy a provider status onto the ledger row; return True if it changed."""
        raw = getattr(status, "value", None)
        normalized = status.normalized()
        if payment.Status == REFUNDED:
            return False
        changed = payment.Status != normalized or (raw is not None and payment.ProviderStatus != raw)
        payment.Status = normalized
        if raw is not None:
            payment.ProviderStatus = str(raw)
        return changed

    def _record_free(
        self,
        db: Session,
        user_id: str,
        plan_id: str,
        custom_plan: CustomPlan,
        original_cents: int,
        discount: Optional[DiscountApplication],
        email: Optional[str],
        upgrade: Optional[UpgradeQuote] = None,
    ) -> IntentResult:
        ref = new_free_ref()
        payment = Payment(
            PaymentID=ref,
            Provider="free",
            UserID=str(user_id),
            PlanID=str(plan_id),
            CustomPlan=dump_custom_plan(custom_plan),
            Currency=self.currency,
            TotalAmount=Decimal(0),
            OriginalPrice=from_cents(original_cents),
            DiscountCode=discount.code if discount else None,
            DiscountAmount=from_cents(discount.discount_cents if discount else 0),
            ProviderStatus="succeeded",
            Status=COMPLETED,
            IsFreePlan=True,
            UserEmail=email,
        )
        if upgrade is not None:
            self._mark_upgrade(payment, upgrade)
        db.add(payment)
        db.commit()
        audit.info(
            "payments.free.recorded",
            extra={"provider_ref": ref, "user_id": str(user_id), "plan_id": str(plan_id)},
        )
        return IntentResult(
            provider_ref=ref,
            provider="free",
            amount_cents=0,
            currency=self.currency,
            is_free=True,
            status=COMPLETED,
            original_cents=original_cents,
            discount_cents=discount.discount_cents if discount else 0,
            upgrade_delta_cents=upgrade.delta_cents if upgrade else None,
        )

    @staticmethod
    def _mark_upgrade(payment: Payment, upgrade: UpgradeQuote) -> None:
        payment.IsUpgrade = True
        payment.TargetEventID = str(upgrade.event.EventID)
        payment.ExistingPrice = from_cents(upgrade.existing_cents)
        payment.NewPlanPrice = from_cents(upgrade.new_total_cents)
        payment.UpgradeDelta = from_cents(upgrade.delta_cents)

    # Contract

    def create_intent(
        self,
        db: Session,
        user_id: str,
        plan_id: str,
        custom_plan: Any,
        client_price: Any,
        discount_code: Any = None,
        email: Optional[str] = None,
    ) -> IntentResult:
        plan = require_custom_plan(custom_plan)
        quote = quote_order(
            db,
            plan_id,
            plan,
            client_price,
            discount_code,
            self.policy,
            context={"user_id": str(user_id), "provider": self.name},
        )
        if quote.amount_cents <= 0:
            return self._record_free(
                db, user_id, plan_id, plan, quote.original_cents, quote.discount, email
            )

        metadata = {
            "userId": str(user_id),
            "planId": str(plan_id),
            "discountCode": quote.discount.code if quote.discount else "",
            "guestLimit": str(plan["guestLimit"]),
            "photoPool": str(plan["photoPool"]),
            "storageDays": str(plan["storageDays"]),
        }
        remote = self._create_remote(
            quote.amount_cents, f"Event plan {quote.plan.name}", metadata, email, None
        )
        payment = Payment(
            PaymentID=str(remote["ref"]),
            Provider=self.name,
            UserID=str(user_id),
            PlanID=str(plan_id),
            CustomPlan=dump_custom_plan(plan),
            Currency=self.currency,
            TotalAmount=from_cents(quote.amount_cents),
            OriginalPrice=from_cents(quote.original_cents),
            DiscountCode=quote.discount.code if quote.discount else None,
            DiscountAmount=from_cents(quote.discount_cents),
            IsFreePlan=False,
            UserEmail=email,
            ProviderCustomerID=remote.get("customer"),
        )
        self._apply_status(payment, remote["status"])
        db.add(payment)
        log_provider_event(db, self.name, "intent_created", payment.PaymentID, str(user_id))
        db.commit()
        audit.info(
            f"payments.{self.name}.intent_created",
            extra={
                "provider_ref": payment.PaymentID,
                "user_id": str(user_id),
                "amount_cents": quote.amount_cents,
                "trusted_client_price": quote.decision.trusted_client_price,
            },
        )
        return IntentResult(
            provider_ref=payment.PaymentID,
            provider=self.name,
            amount_cents=quote.amount_cents,
            currency=self.currency,
            is_free=False,
            status=payment.Status,
            client_secret=remote.get("client_secret"),
            approval_url=remote.get("approval_url"),
            original_cents=quote.original_cents,
            discount_cents=quote.discount_cents,
        )

    def upgrade_idempotency_key(self, user_id: str, event_id: str, plan_id: str, custom_plan: CustomPlan) -> str:
        digest = hashlib.sha256(dump_custom_plan(custom_plan).encode("utf-8")).hexdigest()[:16]
        return f"upgrade_{user_id}_{event_id}_{plan_id}_{digest}"

    def create_upgrade_intent(
        self,
        db: Session,
        user_id: str,
        event_id: str,
        new_plan_id: str,
        new_custom_plan: Any,
        client_upgrade_price: Any,
        email: Optional[str] = None,
    ) -> IntentResult:
        plan = require_custom_plan(new_custom_plan)
        upgrade = quote_upgrade(
            db, user_id, event_id, new_plan_id, plan, client_upgrade_price, self.policy
        )
        if upgrade.charge_cents <= 0:
            return self._record_free(
                db, user_id, new_plan_id, plan, upgrade.new_total_cents, None, email, upgrade
            )

        metadata = {
            "userId": str(user_id),
            "eventId": str(event_id),
            "planId": str(new_plan_id),
            "isUpgrade": "true",
            "existingPrice": str(from_cents(upgrade.existing_cents)),
            "newPlanPrice": str(from_cents(upgrade.new_total_cents)),
        }
        remote = self._create_remote(
            upgrade.charge_cents,
            f"Upgrade to {upgrade.plan.name}",
            metadata,
            email,
            self.upgrade_idempotency_key(str(user_id), str(event_id), str(new_plan_id), plan),
        )
        payment = Payment(
            PaymentID=str(remote["ref"]),
            Provider=self.name,
            UserID=str(user_id),
            PlanID=str(new_plan_id),
            CustomPlan=dump_custom_plan(plan),
            Currency=self.currency,
            TotalAmount=from_cents(upgrade.charge_cents),
            OriginalPrice=from_cents(upgrade.new_total_cents),
            DiscountAmount=Decimal(0),
            IsFreePlan=False,
            UserEmail=email,
        )
        self._mark_upgrade(payment, upgrade)
        self._apply_status(payment, remote["status"])
        db.add(payment)
        log_provider_event(db, self.name, "upgrade_intent_created", payment.PaymentID, str(user_id))
        db.commit()
        audit.info(
            f"payments.{self.name}.upgrade_intent_created",
            extra={
                "provider_ref": payment.PaymentID,
                "event_id": str(event_id),
                "delta_cents": upgrade.delta_cents,
                "charge_cents": upgrade.charge_cents,
            },
        )
        return IntentResult(
            provider_ref=payment.PaymentID,
            provider=self.name,
            amount_cents=upgrade.charge_cents,
            currency=self.currency,
            is_free=False,
            status=payment.Status,
            client_secret=remote.get("client_secret"),
            approval_url=remote.get("approval_url"),
            original_cents=upgrade.new_total_cents,
            upgrade_delta_cents=upgrade.delta_cents,
        )

    def get_status(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        """Poll the provider and overwrite the local status if it drifted.

        If the provider cannot be reached, the last known local status is
        returned.
        """
        payment = self.get_payment(db, provider_ref)
        self._check_owner(payment, user_id)
        if is_free_ref(payment.PaymentID) or payment.Status == REFUNDED:
            return self._status_result(payment)
        try:
            remote = call_with_retry(lambda: self._fetch_remote(payment), self.name)
        except ProviderError as e:
            logger.warning(
                "payments.status.fallback_local",
                extra={"provider": self.name, "provider_ref": payment.PaymentID, "error": e.message},
            )
            return self._status_result(payment)
        previous = payment.Status
        if self._apply_status(payment, remote["status"]):
            log_provider_event(
                db,
                self.name,
                "status_synced",
                payment.PaymentID,
                payment.UserID,
                {"from": previous, "to": payment.Status},
            )
            db.commit()
        return self._status_result(payment)

    @abstractmethod
    def confirm(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        raise NotImplementedError

    def refund(self, db: Session, provider_ref: str, reason: str = "", actor_id: Optional[str] = None) -> Dict[str, Any]:
        if is_free_ref(provider_ref):
            raise ValidationError("Cannot refund free plan payments", violations=["providerRef"])
        payment = self.get_payment(db, provider_ref)
        if payment.Provider != self.name:
            raise ValidationError(
                f"Payment was not made with {self.name}", violations=["providerRef"]
            )
        if payment.Status == REFUNDED:
            return {"providerRef": payment.PaymentID, "status": REFUNDED, "refundId": payment.RefundID}
        if payment.Status != COMPLETED:
            raise ValidationError("Only completed payments can be refunded", violations=["status"])
        try:
            result = self._refund_remote(payment, reason)
        except ProviderError as e:
            db.rollback()
            log_provider_event(db, self.name, "refund_error", payment.PaymentID, payment.UserID, error=e.message)
            db.commit()
            audit.error(
                f"payments.{self.name}.refund_error",
                extra={"provider_ref": payment.PaymentID, "error": e.message},
            )
            raise
        payment.Status = REFUNDED
        payment.RefundID = result.get("refund_id")
        payment.RefundReason = reason or None
        payment.ProviderStatus = str(result.get("status") or payment.ProviderStatus)
        log_provider_event(db, self.name, "refunded", payment.PaymentID, payment.UserID, result)
        db.commit()
        audit.info(
            f"payments.{self.name}.refund_success",
            extra={"provider_ref": payment.PaymentID, "actor_id": actor_id},
        )
        audit_sink.record(
            audit_sink.TYPE_PAYMENT,
            "Payment refunded",
            user_id=actor_id,
            details={"providerRef": payment.PaymentID, "provider": self.name, "reason": reason},
        )
        return {
            "providerRef": payment.PaymentID,
            "status": REFUNDED,
            "refundId": payment.RefundID,
            "amount": float(Decimal(str(payment.TotalAmount))),
        }

    def _status_result(self, payment: Payment) -> StatusResult:
        return StatusResult(
            provider_ref=payment.PaymentID,
            status=payment.Status,
            provider_status=payment.ProviderStatus,
            amount_cents=to_cents(payment.TotalAmount),
            currency=payment.Currency or self.currency,
        )

    def _check_owner(self, payment: Payment, user_id: Optional[str]) -> None:
        if user_id is not None and str(payment.UserID) != str(user_id):
            raise AuthorizationError("Payment belongs to another user")
