"""Server-side plan pricing and the rules for trusting client-declared prices.

`compute_price` is shared by every payment provider adapter and by event
creation; it must stay pure so all of them agree to the cent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from eventlens.core.errors import NotFoundError, PriceIntegrityError
from eventlens.models.plan import PricingPlan
from eventlens.services.plan_schema import CustomPlan, StorageOption, parse_storage_options

audit = logging.getLogger("audit")

_CENT = Decimal("0.01")


def to_cents(amount: Any) -> int:
    """Convert a currency amount (Decimal/float/str) to integer cents, half-up."""
    if amount is None:
        return 0
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(_CENT)


@dataclass(frozen=True)
class PlanTerms:
    plan_id: str
    name: str
    base_price: Decimal
    guest_limit: int
    photo_pool: int
    guest_overage_price: Decimal = Decimal(0)
    photo_overage_price: Decimal = Decimal(0)
    storage_options: List[StorageOption] = field(default_factory=list)
    photos_per_guest: Optional[int] = None
    # True for the zero-cost plan built around an in-app purchase
    is_phantom: bool = False

    @classmethod
    def from_row(cls, row: PricingPlan) -> "PlanTerms":
        return cls(
            plan_id=str(row.PlanID),
            name=str(row.Name),
            base_price=Decimal(str(row.BasePrice or 0)),
            guest_limit=int(row.GuestLimit or 0),
            photo_pool=int(row.PhotoPool or 0),
            guest_overage_price=Decimal(str(row.GuestOveragePrice or 0)),
            photo_overage_price=Decimal(str(row.PhotoOveragePrice or 0)),
            storage_options=parse_storage_options(row.StorageOptions),
            photos_per_guest=row.PhotosPerGuest,
        )

    @classmethod
    def phantom(cls, plan_id: str, custom_plan: CustomPlan) -> "PlanTerms":
        """Plan for subscription-store purchases: no floors, no unit prices.

        The store has already charged the user, so the client's configuration
        and declared price are accepted as-is (see PriceTrustPolicy).
        """
        return cls(
            plan_id=plan_id,
            name=plan_id,
            base_price=Decimal(0),
            guest_limit=0,
            photo_pool=0,
            storage_options=[{"days": custom_plan["storageDays"], "price": Decimal(0)}],
            is_phantom=True,
        )

    def storage_price(self, days: int) -> Decimal:
        for option in self.storage_options:
            if option["days"] == days:
                return option["price"]
        return Decimal(0)


def compute_price(plan: PlanTerms, custom_plan: CustomPlan) -> int:
    """Total charge for ``custom_plan`` on ``plan`` in integer cents.

    An unknown storage duration prices at zero; callers validate storage
    options separately.
    """
    guest_overage = max(0, int(custom_plan["guestLimit"]) - plan.guest_limit)
    photo_overage = max(0, int(custom_plan["photoPool"]) - plan.photo_pool)
    total = (
        plan.base_price
        + guest_overage * plan.guest_overage_price
        + photo_overage * plan.photo_overage_price
        + plan.storage_price(int(custom_plan["storageDays"]))
    )
    return to_cents(total)


def load_plan(db: Session, plan_id: str, active_only: bool = True) -> PricingPlan:
    q = db.query(PricingPlan).filter(PricingPlan.PlanID == str(plan_id))
    if active_only:
        q = q.filter(PricingPlan.IsActive)
    row = q.first()
    if not row:
        raise NotFoundError("Invalid planId", resource="plan", planId=str(plan_id))
    return row


@dataclass(frozen=True)
class PriceDecision:
    amount_cents: int
    server_cents: int
    client_cents: Optional[int]
    trusted_client_price: bool


@dataclass(frozen=True)
class PriceTrustPolicy:
    """Where the server accepts a client-declared price instead of its own.

    Every relaxed path is a named flag so it can be audited and switched off:

    * ``trust_client_price_without_discount``: with no discount code, a
      differing client price is charged as declared.
    * ``trust_subscription_client_price``: in-app subscription purchases skip
      server pricing entirely (phantom plan).
    * ``trust_upgrade_client_price``: upgrade charges use the client-declared
      delta with no drift check against the server delta.
    """

    trust_client_price_without_discount: bool = True
    trust_subscription_client_price: bool = True
    trust_upgrade_client_price: bool = True
    tolerance_cents: int = 1
    minimum_charge_cents: int = 50

    @classmethod
    def from_settings(cls, settings) -> "PriceTrustPolicy":
        return cls(
            trust_client_price_without_discount=bool(
                getattr(settings, "TRUST_CLIENT_PRICE_WITHOUT_DISCOUNT", True)
            ),
            trust_subscription_client_price=bool(getattr(settings, "TRUST_SUBSCRIPTION_CLIENT_PRICE", True)),
            trust_upgrade_client_price=bool(getattr(settings, "TRUST_UPGRADE_CLIENT_PRICE", True)),
            tolerance_cents=int(getattr(settings, "PRICE_TOLERANCE_CENTS", 1)),
            minimum_charge_cents=int(getattr(settings, "MIN_CHARGE_CENTS", 50)),
        )

    def clamp_minimum(self, cents: int) -> int:
        if 0 < cents < self.minimum_charge_cents:
            return self.minimum_charge_cents
        return max(0, cents)

    def resolve_charge(
        self,
        server_cents: int,
        client_cents: Optional[int],
        has_discount: bool,
        context: Optional[dict] = None,
    ) -> PriceDecision:
        """Pick the amount to charge, raising PriceIntegrityError on tampering.

        ``server_cents`` already has any discount subtracted.
        """
        ctx = dict(context or {})
        if client_cents is None:
            return PriceDecision(self.clamp_minimum(server_cents), server_cents, None, False)

        if not has_discount and self.trust_client_price_without_discount:
            if client_cents != server_cents:
                audit.warning(
                    "pricing.client_price_trusted",
                    extra={**ctx, "client_cents": client_cents, "server_cents": server_cents},
                )
            return PriceDecision(self.clamp_minimum(client_cents), server_cents, client_cents, True)

        if abs(client_cents - server_cents) > self.tolerance_cents:
            audit.error(
                "pricing.mismatch",
                extra={**ctx, "client_cents": client_cents, "server_cents": server_cents},
            )
            raise PriceIntegrityError(
                "Price validation failed - client and server prices do not match",
                clientPrice=float(from_cents(client_cents)),
                serverPrice=float(from_cents(server_cents)),
            )
        return PriceDecision(self.clamp_minimum(server_cents), server_cents, client_cents, False)

    def verify_paid_amount(self, paid_cents: int, expected_cents: int, has_discount: bool) -> None:
        """Check a completed payment covers the validated total."""
        if not has_discount and self.trust_client_price_without_discount:
            return
        expected = self.clamp_minimum(expected_cents)
        if abs(paid_cents - expected) > self.tolerance_cents:
            raise PriceIntegrityError(
                "Payment amount does not match the validated price",
                paidAmount=float(from_cents(paid_cents)),
                expectedAmount=float(from_cents(expected)),
            )
