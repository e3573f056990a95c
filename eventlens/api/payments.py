"""Payment endpoints for Stripe, PayPal and RevenueCat, plus discount lookups.

Every route goes through the provider adapters; amounts in responses are in
major currency units.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from db import get_db
from eventlens.core.dependencies import get_payments, json_body
from eventlens.core.errors import ValidationError
from eventlens.services.discounts import compute_discount_cents, validate_code
from eventlens.services.identity import Identity, require_admin, require_identity
from eventlens.services.payments.registry import PaymentProviders
from eventlens.services.pricing import from_cents, to_cents

router = APIRouter()


def _require(data: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing), violations=missing)


def _create(provider, db: Session, identity: Identity, data: Dict[str, Any]):
    _require(data, "planId", "customPlan")
    result = provider.create_intent(
        db,
        identity.user_id,
        str(data["planId"]),
        data["customPlan"],
        data.get("finalPrice"),
        discount_code=data.get("discountCode"),
        email=data.get("email") or identity.email,
    )
    return result.to_dict()


def _create_upgrade(provider, db: Session, identity: Identity, data: Dict[str, Any]):
    _require(data, "eventId", "planId", "customPlan")
    result = provider.create_upgrade_intent(
        db,
        identity.user_id,
        str(data["eventId"]),
        str(data["planId"]),
        data["customPlan"],
        data.get("upgradePrice"),
        email=data.get("email") or identity.email,
    )
    return result.to_dict()


# Stripe


@router.post("/payments/stripe/intents")
def stripe_create_intent(
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return _create(providers.stripe, db, identity, data)


@router.post("/payments/stripe/upgrade-intents")
def stripe_create_upgrade_intent(
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return _create_upgrade(providers.stripe, db, identity, data)


@router.post("/payments/stripe/{ref}/confirm")
def stripe_confirm(
    ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    result = providers.stripe.confirm(
        db, ref, user_id=identity.user_id, payment_method_id=data.get("paymentMethodId")
    )
    return result.to_dict()


@router.get("/payments/stripe/{ref}/status")
def stripe_status(
    ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
):
    return providers.stripe.get_status(db, ref, user_id=identity.user_id).to_dict()


@router.post("/payments/stripe/{ref}/refund")
def stripe_refund(
    ref: str,
    db: Session = Depends(get_db),
    admin: Identity = Depends(require_admin),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return providers.stripe.refund(db, ref, str(data.get("reason") or ""), actor_id=admin.user_id)


# PayPal


@router.post("/payments/paypal/orders")
def paypal_create_order(
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return _create(providers.paypal, db, identity, data)


@router.post("/payments/paypal/upgrade-orders")
def paypal_create_upgrade_order(
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return _create_upgrade(providers.paypal, db, identity, data)


@router.post("/payments/paypal/{ref}/capture")
def paypal_capture(
    ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
):
    return providers.paypal.capture(db, ref, user_id=identity.user_id).to_dict()


@router.get("/payments/paypal/{ref}/status")
def paypal_status(
    ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
):
    return providers.paypal.get_status(db, ref, user_id=identity.user_id).to_dict()


@router.post("/payments/paypal/{ref}/refund")
def paypal_refund(
    ref: str,
    db: Session = Depends(get_db),
    admin: Identity = Depends(require_admin),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    return providers.paypal.refund(db, ref, str(data.get("reason") or ""), actor_id=admin.user_id)


# RevenueCat


@router.post("/payments/revenuecat/verify")
def revenuecat_verify(
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    verification = providers.revenuecat.verify_subscription(identity.user_id, data.get("productId"))
    return verification.to_dict()


# Discount codes


@router.get("/discount-codes/{code}/validate")
def validate_discount_code(
    code: str,
    amount: Optional[float] = Query(None, ge=0),
    db: Session = Depends(get_db),
):
    check = validate_code(db, code)
    if not check.valid or check.record is None:
        return {"valid": False, "reason": check.reason}
    record = check.record
    out: Dict[str, Any] = {
        "valid": True,
        "code": record.Code,
        "discountType": record.DiscountType,
        "discountValue": float(record.DiscountValue),
    }
    if amount is not None:
        order_cents = to_cents(amount)
        discount = compute_discount_cents(record, order_cents)
        out["discountAmount"] = float(from_cents(discount))
        out["finalAmount"] = float(from_cents(order_cents - discount))
    return out
