"""RevenueCat receipt verification for in-app purchases.

The store has already charged the user, so there is nothing to create or
capture: a purchase is accepted when RevenueCat reports an active
entitlement or a one-time purchase of the requested product. One-time
purchases are identified by the store transaction id, which can pay for one
event only.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from eventlens.core.errors import ProviderError, ReplayError, ValidationError
from eventlens.core.settings import settings
from eventlens.models.event import Event
from eventlens.models.payment import Payment
from eventlens.services.payments.common import (
    COMPLETED,
    PaymentProvider,
    RevenueCatStatus,
    StatusResult,
    log_provider_event,
)
from eventlens.services.plan_schema import CustomPlan, dump_custom_plan
from eventlens.services.pricing import from_cents
from eventlens.services.temporal import normalize_instant, utcnow

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")


@dataclass
class Verification:
    user_id: str
    product_id: Optional[str]
    active_entitlements: List[Dict[str, Any]] = field(default_factory=list)
    purchase: Optional[Dict[str, Any]] = None

    @property
    def transaction_id(self) -> Optional[str]:
        if not self.purchase:
            return None
        tx = self.purchase.get("store_transaction_identifier")
        return str(tx) if tx else None

    @property
    def success(self) -> bool:
        return bool(self.active_entitlements) or self.purchase is not None

    @property
    def status(self) -> RevenueCatStatus:
        return RevenueCatStatus(entitlement_active=self.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "activeEntitlements": self.active_entitlements,
            "validConsumablePurchase": self.purchase,
            "transactionId": self.transaction_id,
        }


def _entitlement_active(data: Dict[str, Any], now) -> bool:
    expires = data.get("expires_date")
    if not expires:
        return True
    try:
        return normalize_instant(expires) >= now  # type: ignore[operator]
    except ValueError:
        return False


def _purchase_sort_key(purchase: Dict[str, Any]):
    try:
        return normalize_instant(purchase.get("purchase_date")) or normalize_instant(0)
    except ValueError:
        return normalize_instant(0)


class RevenueCatAdapter(PaymentProvider):
    name = "revenuecat"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        policy=None,
    ):
        super().__init__(policy)
        self.api_key = settings.REVENUECAT_SECRET_KEY if api_key is None else api_key
        self.api_base = (api_base or settings.REVENUECAT_API_BASE).rstrip("/")
        self.http = http or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    def verify_subscription(self, user_id: str, product_id: Optional[str] = None, now=None) -> Verification:
        if not self.api_key:
            raise ProviderError("RevenueCat secret key not configured", provider=self.name)
        try:
            resp = self.http.get(
                f"{self.api_base}/subscribers/{user_id}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise ProviderError("RevenueCat request timed out", provider=self.name, retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                "RevenueCat request failed", provider=self.name, retryable=True, provider_detail=str(e)
            ) from e
        if resp.status_code >= 400:
            logger.warning(
                "payments.revenuecat.http_error",
                extra={"status_code": resp.status_code, "user_id": user_id},
            )
            raise ProviderError(
                f"RevenueCat verification failed ({resp.status_code})",
                provider=self.name,
                retryable=resp.status_code >= 500,
                provider_detail=resp.text[:500],
            )

        subscriber = (resp.json() or {}).get("subscriber") or {}
        current = normalize_instant(now) if now is not None else utcnow()

        entitlements = []
        for entitlement_id, data in (subscriber.get("entitlements") or {}).items():
            if _entitlement_active(data or {}, current):
                entitlements.append(
                    {
                        "id": entitlement_id,
                        "productIdentifier": data.get("product_identifier"),
                        "purchaseDate": data.get("purchase_date"),
                        "expiresDate": data.get("expires_date"),
                    }
                )

        purchase = None
        if product_id:
            purchases = (subscriber.get("non_subscriptions") or {}).get(product_id) or []
            if purchases:
                purchase = max(purchases, key=_purchase_sort_key)

        result = Verification(str(user_id), product_id, entitlements, purchase)
        audit.info(
            "payments.revenuecat.verified",
            extra={
                "user_id": str(user_id),
                "product_id": product_id,
                "success": result.success,
                "transaction_id": result.transaction_id,
            },
        )
        return result

    def ensure_unused(self, db: Session, transaction_id: str) -> Optional[Payment]:
        """Raise ReplayError if the store transaction already paid for an event."""
        used_by = (
            db.query(Event.EventID)
            .filter(Event.RevenueCatTransactionID == str(transaction_id))
            .first()
        )
        payment = db.query(Payment).filter(Payment.PaymentID == str(transaction_id)).first()
        if used_by is not None or (payment is not None and payment.ConsumedByEventID):
            audit.warning("payments.revenuecat.replay_rejected", extra={"transaction_id": transaction_id})
            raise ReplayError(
                "This purchase has already been used to create an event",
                transactionId=str(transaction_id),
            )
        return payment

    def record_purchase(
        self,
        db: Session,
        user_id: str,
        product_id: Optional[str],
        plan_id: str,
        custom_plan: CustomPlan,
        declared_cents: int,
        email: Optional[str] = None,
    ) -> Payment:
        """Verify the purchase and stage a completed ledger row (no commit).

        The declared price is recorded as both original and final price.
        """
        verification = self.verify_subscription(user_id, product_id)
        if not verification.success:
            raise ValidationError(
                "No active subscription or valid purchase found",
                violations=["revenueCat"],
                productId=product_id,
            )
        tx = verification.transaction_id
        payment = self.ensure_unused(db, tx) if tx else None
        if payment is not None:
            if str(payment.UserID) != str(user_id):
                raise ReplayError("This purchase belongs to another user", transactionId=tx)
            return payment

        payment = Payment(
            PaymentID=tx or f"rc_{uuid.uuid4().hex}",
            Provider=self.name,
            UserID=str(user_id),
            PlanID=str(plan_id),
            CustomPlan=dump_custom_plan(custom_plan),
            Currency=self.currency,
            TotalAmount=from_cents(declared_cents),
            OriginalPrice=from_cents(declared_cents),
            DiscountAmount=Decimal(0),
            IsFreePlan=False,
            UserEmail=email,
            ProviderCustomerID=str(user_id),
        )
        self._apply_status(payment, verification.status)
        payment.ProviderStatus = "entitlement_active"
        db.add(payment)
        log_provider_event(
            db, self.name, "purchase_verified", payment.PaymentID, str(user_id), verification.to_dict()
        )
        return payment

    def _create_remote(self, amount_cents, description, metadata, email, idempotency_key):
        raise ValidationError("RevenueCat purchases are verified, not created", violations=["provider"])

    def _fetch_remote(self, payment: Payment) -> Dict[str, Any]:
        return {"status": RevenueCatStatus(entitlement_active=payment.Status == COMPLETED)}

    def _refund_remote(self, payment: Payment, reason: str) -> Dict[str, Any]:
        raise ValidationError("RevenueCat purchases are refunded through the app store", violations=["provider"])

    def confirm(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        return self.get_status(db, provider_ref, user_id=user_id)

    def create_intent(self, *args, **kwargs):
        raise ValidationError("RevenueCat purchases are verified, not created", violations=["provider"])

    def create_upgrade_intent(self, *args, **kwargs):
        raise ValidationError("RevenueCat purchases are verified, not created", violations=["provider"])

    def get_status(self, db: Session, provider_ref: str, user_id: Optional[str] = None) -> StatusResult:
        # Entitlements are checked once at purchase time; there is nothing to poll
        payment = self.get_payment(db, provider_ref)
        self._check_owner(payment, user_id)
        return self._status_result(payment)

    def refund(self, *args, **kwargs):
        raise ValidationError("RevenueCat purchases are refunded through the app store", violations=["provider"])
