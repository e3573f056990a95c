from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventlens.core.errors import ValidationError
from eventlens.models.discount import DiscountCode, DiscountCodeUsage
from eventlens.services.pricing import from_cents, to_cents
from eventlens.services.temporal import normalize_instant, to_naive_utc, utcnow

audit = logging.getLogger("audit")

REASON_NOT_FOUND = "Invalid discount code"
REASON_INACTIVE = "Discount code is inactive"
REASON_NOT_STARTED = "Discount code has not started yet"
REASON_EXPIRED = "Discount code has expired"


def normalize_code(raw: Any) -> Optional[str]:
    """Accept ``"code"`` or ``{"code": "code"}``; return the upper-cased code or None."""
    if isinstance(raw, dict):
        raw = raw.get("code")
    if raw is None:
        return None
    code = str(raw).strip().upper()
    return code or None


@dataclass
class DiscountCheck:
    valid: bool
    reason: Optional[str] = None
    record: Optional[DiscountCode] = None


@dataclass
class DiscountApplication:
    code: str
    discount_type: str
    discount_cents: int
    final_cents: int
    usage_id: Optional[int] = None
    replayed: bool = False


def _check_record(record: Optional[DiscountCode], now: datetime) -> DiscountCheck:
    if record is None:
        return DiscountCheck(False, REASON_NOT_FOUND)
    if not record.IsActive:
        return DiscountCheck(False, REASON_INACTIVE, record)
    start = normalize_instant(record.StartDate)
    expire = normalize_instant(record.ExpireDate)
    if start is not None and now < start:
        return DiscountCheck(False, REASON_NOT_STARTED, record)
    if expire is not None and now >= expire:
        return DiscountCheck(False, REASON_EXPIRED, record)
    return DiscountCheck(True, None, record)


def validate_code(db: Session, code: Any, now: Optional[datetime] = None) -> DiscountCheck:
    normalized = normalize_code(code)
    if not normalized:
        return DiscountCheck(False, REASON_NOT_FOUND)
    record = db.query(DiscountCode).filter(DiscountCode.Code == normalized).first()
    return _check_record(record, normalize_instant(now) if now else utcnow())


def compute_discount_cents(record: DiscountCode, order_cents: int) -> int:
    """Discount for an order, never negative and never above the order."""
    value = Decimal(str(record.DiscountValue or 0))
    if record.DiscountType == "percentage":
        pct = min(max(value, Decimal(0)), Decimal(100))
        raw = (Decimal(order_cents) * pct / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        cents = int(raw)
    elif record.DiscountType == "fixed":
        cents = to_cents(max(value, Decimal(0)))
    else:
        cents = 0
    return max(0, min(cents, int(order_cents)))


def quote_discount(db: Session, code: Any, order_cents: int, now: Optional[datetime] = None) -> DiscountApplication:
    """Price a code against an order without redeeming it."""
    check = validate_code(db, code, now)
    if not check.valid or check.record is None:
        raise ValidationError(
            f"Invalid discount code: {check.reason}", violations=[check.reason or REASON_NOT_FOUND]
        )
    discount = compute_discount_cents(check.record, order_cents)
    return DiscountApplication(
        code=str(check.record.Code),
        discount_type=str(check.record.DiscountType),
        discount_cents=discount,
        final_cents=int(order_cents) - discount,
    )


def apply_code(
    db: Session,
    code: Any,
    order_cents: int,
    event_id: str,
    user_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> DiscountApplication:
    """Redeem ``code`` for ``event_id``: bump counters and append a usage row.

    The code row is locked for the read-modify-write. A second redemption for
    the same event returns the first one instead of counting twice. With
    ``commit=False`` the caller owns the transaction (event creation writes the
    redemption together with the event).
    """
    normalized = normalize_code(code)
    current = normalize_instant(now) if now else utcnow()
    record = (
        db.query(DiscountCode)
        .with_for_update()
        .filter(DiscountCode.Code == (normalized or ""))
        .first()
    )
    check = _check_record(record, current)  # type: ignore[arg-type]
    if not check.valid or record is None:
        raise ValidationError(
            f"Invalid discount code: {check.reason}", violations=[check.reason or REASON_NOT_FOUND]
        )

    existing = (
        db.query(DiscountCodeUsage)
        .filter(
            DiscountCodeUsage.DiscountCodeID == record.DiscountCodeID,
            DiscountCodeUsage.EventID == str(event_id),
        )
        .first()
    )
    if existing is not None:
        discount = to_cents(existing.DiscountAmount)
        return DiscountApplication(
            code=str(record.Code),
            discount_type=str(record.DiscountType),
            discount_cents=discount,
            final_cents=to_cents(existing.OrderAmount) - discount,
            usage_id=existing.UsageID,
            replayed=True,
        )

    discount = compute_discount_cents(record, order_cents)
    record.CurrentUses = int(record.CurrentUses or 0) + 1
    record.TotalDiscountGiven = Decimal(str(record.TotalDiscountGiven or 0)) + from_cents(discount)
    usage = DiscountCodeUsage(
        DiscountCodeID=record.DiscountCodeID,
        Code=record.Code,
        EventID=str(event_id),
        UserID=str(user_id),
        OrderAmount=from_cents(order_cents),
        DiscountAmount=from_cents(discount),
        UsedAt=to_naive_utc(current),  # type: ignore[arg-type]
    )
    db.add(usage)
    try:
        db.flush()
        if commit:
            db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(
            "Discount code already applied to this event", violations=["duplicate redemption"]
        )

    audit.info(
        "discounts.apply.success",
        extra={
            "code": record.Code,
            "event_id": str(event_id),
            "user_id": str(user_id),
            "discount_cents": discount,
            "order_cents": int(order_cents),
        },
    )
    return DiscountApplication(
        code=str(record.Code),
        discount_type=str(record.DiscountType),
        discount_cents=discount,
        final_cents=int(order_cents) - discount,
        usage_id=usage.UsageID,
    )
