from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from eventlens.core.errors import ValidationError
from eventlens.models import DiscountCode, DiscountCodeUsage
from eventlens.services.discounts import (
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_NOT_FOUND,
    REASON_NOT_STARTED,
    apply_code,
    compute_discount_cents,
    normalize_code,
    quote_discount,
    validate_code,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_code(db_session):
    def _make(code="SAVE10", kind="percentage", value="10", active=True, start=None, expire=None):
        row = DiscountCode(
            Code=code,
            DiscountType=kind,
            DiscountValue=Decimal(value),
            StartDate=start or datetime(2020, 1, 1),
            ExpireDate=expire or datetime(2099, 1, 1),
            IsActive=active,
            CurrentUses=0,
            TotalDiscountGiven=0,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _make


def test_normalize_code_accepts_object_form():
    assert normalize_code(" save10 ") == "SAVE10"
    assert normalize_code({"code": "welcome"}) == "WELCOME"
    assert normalize_code("  ") is None
    assert normalize_code(None) is None


def test_validate_reasons(db_session, make_code):
    make_code("OFF", active=False)
    make_code("SOON", start=datetime(2026, 7, 1))
    make_code("OLD", expire=datetime(2026, 5, 1))
    make_code("GOOD")

    assert validate_code(db_session, "nope", NOW).reason == REASON_NOT_FOUND
    assert validate_code(db_session, "off", NOW).reason == REASON_INACTIVE
    assert validate_code(db_session, "soon", NOW).reason == REASON_NOT_STARTED
    assert validate_code(db_session, "old", NOW).reason == REASON_EXPIRED
    assert validate_code(db_session, "good", NOW).valid is True


def test_expiry_is_exclusive(db_session, make_code):
    make_code("EDGE", expire=NOW.replace(tzinfo=None))
    assert validate_code(db_session, "EDGE", NOW).reason == REASON_EXPIRED
    assert validate_code(db_session, "EDGE", NOW - timedelta(seconds=1)).valid is True


def test_discount_never_exceeds_order(make_code):
    fixed = make_code("BIG", kind="fixed", value="50")
    assert compute_discount_cents(fixed, 2000) == 2000
    pct = make_code("HALF", kind="percentage", value="150")
    assert compute_discount_cents(pct, 999) == 999
    odd = make_code("THIRD", kind="percentage", value="33.33")
    assert compute_discount_cents(odd, 1000) == 333


def test_quote_does_not_redeem(db_session, make_code):
    row = make_code()
    quote = quote_discount(db_session, "save10", 2500, NOW)
    assert quote.discount_cents == 250
    assert quote.final_cents == 2250
    db_session.refresh(row)
    assert row.CurrentUses == 0


def test_quote_invalid_code_raises(db_session):
    with pytest.raises(ValidationError) as exc:
        quote_discount(db_session, "MISSING", 1000, NOW)
    assert REASON_NOT_FOUND in exc.value.violations


def test_apply_counts_each_event_once(db_session, make_code):
    row = make_code()
    first = apply_code(db_session, "SAVE10", 2000, "event-1", "user-1", NOW)
    again = apply_code(db_session, "SAVE10", 2000, "event-1", "user-1", NOW)
    other = apply_code(db_session, "SAVE10", 3000, "event-2", "user-1", NOW)

    assert first.discount_cents == 200 and not first.replayed
    assert again.replayed and again.usage_id == first.usage_id
    assert other.discount_cents == 300

    db_session.refresh(row)
    assert row.CurrentUses == 2
    assert row.TotalDiscountGiven == Decimal("5.00")
    usages = db_session.query(DiscountCodeUsage).filter(DiscountCodeUsage.DiscountCodeID == row.DiscountCodeID)
    assert usages.count() == 2


def test_apply_rejects_expired_code(db_session, make_code):
    make_code("OLD", expire=datetime(2026, 5, 1))
    with pytest.raises(ValidationError):
        apply_code(db_session, "OLD", 2000, "event-1", "user-1", NOW)


def test_validate_endpoint(client, make_code):
    make_code("SAVE10")
    r = client.get("/discount-codes/save10/validate", params={"amount": 25})
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is True
    assert body["discountAmount"] == 2.5
    assert body["finalAmount"] == 22.5

    r = client.get("/discount-codes/NOPE/validate")
    assert r.json() == {"valid": False, "reason": REASON_NOT_FOUND}
