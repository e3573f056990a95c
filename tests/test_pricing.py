from decimal import Decimal

import pytest

from eventlens.core.errors import NotFoundError, PriceIntegrityError
from eventlens.services.plan_schema import parse_storage_options
from eventlens.services.pricing import (
    PlanTerms,
    PriceTrustPolicy,
    compute_price,
    from_cents,
    load_plan,
    to_cents,
)

from conftest import custom_plan

STANDARD = PlanTerms(
    plan_id="standard",
    name="Standard",
    base_price=Decimal("10.00"),
    guest_limit=10,
    photo_pool=100,
    guest_overage_price=Decimal("0.50"),
    photo_overage_price=Decimal("0.05"),
    storage_options=parse_storage_options('[{"days": 30, "price": 0}, {"days": 90, "price": 5}]'),
)


def test_cents_conversion_rounds_half_up():
    assert to_cents("19.995") == 2000
    assert to_cents(0.1) == 10
    assert to_cents(None) == 0
    assert from_cents(1999) == Decimal("19.99")


def test_price_at_plan_minimum_has_no_overage():
    assert compute_price(STANDARD, custom_plan(10, 100, storage_days=30)) == 1000


def test_price_with_overage_and_storage():
    # 5 extra guests * 0.50 + 20 extra photos * 0.05 + 90-day storage 5.00
    price = compute_price(STANDARD, custom_plan(15, 120, storage_days=90))
    assert price == 1000 + 250 + 100 + 500


def test_price_is_deterministic():
    cp = custom_plan(37, 419, storage_days=90)
    assert compute_price(STANDARD, cp) == compute_price(STANDARD, cp)


def test_unknown_storage_duration_prices_at_zero():
    assert compute_price(STANDARD, custom_plan(10, 100, storage_days=45)) == 1000


def test_phantom_plan_prices_nothing():
    phantom = PlanTerms.phantom("rc_plan", custom_plan(500, 9000, storage_days=365))
    assert phantom.is_phantom
    assert compute_price(phantom, custom_plan(500, 9000, storage_days=365)) == 0


def test_minimum_charge_clamps_small_amounts():
    policy = PriceTrustPolicy(minimum_charge_cents=50)
    assert policy.clamp_minimum(0) == 0
    assert policy.clamp_minimum(1) == 50
    assert policy.clamp_minimum(49) == 50
    assert policy.clamp_minimum(51) == 51


def test_client_price_trusted_without_discount():
    policy = PriceTrustPolicy()
    decision = policy.resolve_charge(1000, 800, has_discount=False)
    assert decision.amount_cents == 800
    assert decision.trusted_client_price is True


def test_client_price_not_trusted_when_flag_off():
    policy = PriceTrustPolicy(trust_client_price_without_discount=False)
    with pytest.raises(PriceIntegrityError):
        policy.resolve_charge(1000, 800, has_discount=False)


def test_discounted_price_must_match_within_tolerance():
    policy = PriceTrustPolicy(tolerance_cents=1)
    assert policy.resolve_charge(900, 901, has_discount=True).amount_cents == 900
    with pytest.raises(PriceIntegrityError) as exc:
        policy.resolve_charge(900, 1000, has_discount=True)
    assert exc.value.to_dict()["code"] == "price_mismatch"
    assert exc.value.details["serverPrice"] == 9.0


def test_no_client_price_uses_server_price():
    decision = PriceTrustPolicy().resolve_charge(1234, None, has_discount=True)
    assert decision.amount_cents == 1234
    assert decision.client_cents is None


def test_verify_paid_amount():
    policy = PriceTrustPolicy()
    policy.verify_paid_amount(900, 900, has_discount=True)
    # Without a discount the payment amount is accepted as final
    policy.verify_paid_amount(1, 900, has_discount=False)
    with pytest.raises(PriceIntegrityError):
        policy.verify_paid_amount(500, 900, has_discount=True)


def test_load_plan_skips_inactive(db_session, plan):
    assert load_plan(db_session, "standard").Name == "Standard"
    plan.IsActive = False
    db_session.commit()
    with pytest.raises(NotFoundError):
        load_plan(db_session, "standard")
    assert load_plan(db_session, "standard", active_only=False).PlanID == "standard"
