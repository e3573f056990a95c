import inspect
from datetime import datetime
from decimal import Decimal

import pytest
import stripe

from eventlens.core.errors import (
    AuthorizationError,
    PriceIntegrityError,
    ProviderError,
    ReplayError,
    ValidationError,
)
from eventlens.models import DiscountCode, Payment, PaymentLog
from eventlens.services.payments.common import (
    COMPLETED,
    FAILED,
    PENDING,
    REFUNDED,
    PaymentProvider,
    is_free_ref,
)

from conftest import custom_plan


def _fail(*args, **kwargs):
    raise AssertionError("provider must not be called")


def test_free_plan_skips_provider(db_session, providers, free_plan, monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", _fail)
    result = providers.stripe.create_intent(
        db_session, "owner-1", "free", custom_plan(5, 50, photos_per_guest=5, storage_days=7), None
    )
    assert result.is_free and is_free_ref(result.provider_ref)
    payment = db_session.get(Payment, result.provider_ref)
    assert payment.Status == COMPLETED
    assert payment.Provider == "free"
    assert payment.TotalAmount == 0


def test_full_discount_becomes_free(db_session, providers, plan, monkeypatch):
    db_session.add(
        DiscountCode(
            Code="ALLFREE",
            DiscountType="percentage",
            DiscountValue=100,
            StartDate=datetime(2020, 1, 1),
            ExpireDate=datetime(2099, 1, 1),
            IsActive=True,
        )
    )
    db_session.commit()
    monkeypatch.setattr(stripe.PaymentIntent, "create", _fail)
    result = providers.stripe.create_intent(
        db_session, "owner-1", "standard", custom_plan(), 0, discount_code="allfree"
    )
    assert result.is_free
    assert result.discount_cents == 1000
    assert db_session.get(Payment, result.provider_ref).DiscountCode == "ALLFREE"


def test_stripe_intent_uses_server_price(db_session, providers, plan, discount, stripe_api):
    result = providers.stripe.create_intent(
        db_session, "owner-1", "standard", custom_plan(12, 100), 9.90, discount_code="save10",
        email="Owner@Example.test",
    )
    # 10.00 base + 2 guests * 0.50 = 11.00, minus 10%
    assert result.amount_cents == 990
    assert result.client_secret == "pi_secret"
    params = stripe_api["calls"][0][1]
    assert params["amount"] == 990
    assert params["receipt_email"] == "owner@example.test"
    assert params["customer"] == "cus_1"

    payment = db_session.get(Payment, result.provider_ref)
    assert payment.Status == PENDING
    assert payment.ProviderStatus == "requires_payment_method"
    assert payment.DiscountAmount == Decimal("1.10")


def test_stripe_intent_rejects_tampered_discounted_price(db_session, providers, plan, discount, stripe_api):
    with pytest.raises(PriceIntegrityError):
        providers.stripe.create_intent(
            db_session, "owner-1", "standard", custom_plan(), 1.00, discount_code="SAVE10"
        )
    assert stripe_api["calls"] == []
    assert db_session.query(Payment).count() == 0


def test_minimum_charge_applied(db_session, providers, plan, stripe_api):
    db_session.add(
        DiscountCode(
            Code="NEARLY",
            DiscountType="fixed",
            DiscountValue=Decimal("9.80"),
            StartDate=datetime(2020, 1, 1),
            ExpireDate=datetime(2099, 1, 1),
            IsActive=True,
        )
    )
    db_session.commit()
    result = providers.stripe.create_intent(
        db_session, "owner-1", "standard", custom_plan(), None, discount_code="NEARLY"
    )
    assert result.amount_cents == 50


def test_invalid_custom_plan_rejected(db_session, providers, plan):
    with pytest.raises(ValidationError) as exc:
        providers.stripe.create_intent(db_session, "owner-1", "standard", {"guestLimit": "many"}, None)
    assert "customPlan.guestLimit must be a whole number" in exc.value.violations


def test_stripe_confirm_is_idempotent(db_session, providers, plan, stripe_api):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref

    first = providers.stripe.confirm(db_session, ref, user_id="owner-1", payment_method_id="pm_card_visa")
    assert first.status == COMPLETED
    calls_after_first = len(stripe_api["calls"])

    again = providers.stripe.confirm(db_session, ref, user_id="owner-1")
    assert again.status == COMPLETED
    assert len(stripe_api["calls"]) == calls_after_first


def test_stripe_confirm_other_users_payment(db_session, providers, plan, stripe_api):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref
    with pytest.raises(AuthorizationError):
        providers.stripe.confirm(db_session, ref, user_id="someone-else")


def test_stripe_card_decline_marks_failed(db_session, providers, plan, stripe_api, monkeypatch):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref

    def decline(ref, **params):
        raise stripe.CardError("Your card was declined.", "card", "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", decline)
    with pytest.raises(ProviderError) as exc:
        providers.stripe.confirm(db_session, ref, user_id="owner-1", payment_method_id="pm_declined")
    assert exc.value.retryable is False
    assert db_session.get(Payment, ref).Status == FAILED
    assert db_session.query(PaymentLog).filter(PaymentLog.EventType == "confirm_failed").count() == 1


def test_status_falls_back_to_local_when_stripe_unreachable(db_session, providers, plan, stripe_api, monkeypatch):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref
    attempts = []

    def unreachable(ref):
        attempts.append(ref)
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", unreachable)
    status = providers.stripe.get_status(db_session, ref)
    assert status.status == PENDING
    # One retry for a retryable failure
    assert len(attempts) == 2


def test_status_sync_overwrites_drift(db_session, providers, plan, stripe_api):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref
    stripe_api["intents"][ref]["status"] = "succeeded"
    assert providers.stripe.get_status(db_session, ref).status == COMPLETED
    assert db_session.get(Payment, ref).ProviderStatus == "succeeded"


def test_stripe_refund(db_session, providers, plan, stripe_api):
    ref = providers.stripe.create_intent(db_session, "owner-1", "standard", custom_plan(), None).provider_ref
    with pytest.raises(ValidationError):
        providers.stripe.refund(db_session, ref, "requested_by_customer")
    providers.stripe.confirm(db_session, ref, payment_method_id="pm_card_visa")

    result = providers.stripe.refund(db_session, ref, "requested_by_customer", actor_id="admin-1")
    assert result["status"] == REFUNDED
    assert result["refundId"] == "re_1"
    # A refunded payment is never flipped back by a later sync
    assert providers.stripe.get_status(db_session, ref).status == REFUNDED


def test_free_payments_cannot_be_refunded(db_session, providers, free_plan):
    ref = providers.stripe.create_intent(
        db_session, "owner-1", "free", custom_plan(5, 50, photos_per_guest=5, storage_days=7), None
    ).provider_ref
    with pytest.raises(ValidationError):
        providers.stripe.refund(db_session, ref)


def test_paypal_order_capture_and_refund(db_session, providers, plan, paypal_stub):
    paypal_stub.add(
        "POST",
        "/v2/checkout/orders",
        {
            "id": "ORDER-1",
            "status": "CREATED",
            "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"}],
        },
        status=201,
    )
    paypal_stub.add(
        "POST",
        "/v2/checkout/orders/ORDER-1/capture",
        {
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
        },
    )
    paypal_stub.add("POST", "/v2/payments/captures/CAP-1/refund", {"id": "REF-1", "status": "COMPLETED"})

    result = providers.paypal.create_intent(db_session, "owner-1", "standard", custom_plan(), None)
    assert result.provider_ref == "ORDER-1"
    assert result.approval_url.endswith("token=ORDER-1")
    assert db_session.get(Payment, "ORDER-1").Status == PENDING

    captured = providers.paypal.capture(db_session, "ORDER-1", user_id="owner-1")
    assert captured.status == COMPLETED
    assert db_session.get(Payment, "ORDER-1").CaptureID == "CAP-1"

    # Capturing twice does not hit PayPal again
    calls = len(paypal_stub.calls)
    providers.paypal.capture(db_session, "ORDER-1", user_id="owner-1")
    assert len(paypal_stub.calls) == calls

    refund = providers.paypal.refund(db_session, "ORDER-1", "Customer requested refund")
    assert refund["status"] == REFUNDED
    assert refund["refundId"] == "REF-1"


def test_paypal_server_error_is_retryable(db_session, providers, plan, paypal_stub):
    paypal_stub.add("POST", "/v2/checkout/orders", {"name": "INTERNAL_SERVER_ERROR"}, status=503)
    with pytest.raises(ProviderError) as exc:
        providers.paypal.create_intent(db_session, "owner-1", "standard", custom_plan(), None)
    assert exc.value.retryable is True
    assert db_session.query(Payment).count() == 0


def test_paypal_refund_needs_capture(db_session, providers, plan):
    db_session.add(
        Payment(
            PaymentID="ORDER-2",
            Provider="paypal",
            UserID="owner-1",
            PlanID="standard",
            Currency="usd",
            TotalAmount=Decimal("10.00"),
            OriginalPrice=Decimal("10.00"),
            DiscountAmount=0,
            Status=COMPLETED,
        )
    )
    db_session.commit()
    with pytest.raises(ValidationError):
        providers.paypal.refund(db_session, "ORDER-2")


def _subscriber(entitlements=None, purchases=None):
    return {
        "subscriber": {
            "entitlements": entitlements or {},
            "non_subscriptions": purchases or {},
        }
    }


def test_revenuecat_verification(providers, revenuecat_stub):
    revenuecat_stub.add(
        "GET",
        "/v1/subscribers/owner-1",
        _subscriber(
            entitlements={
                "pro": {"expires_date": "2099-01-01T00:00:00Z", "product_identifier": "pro_monthly"},
                "old": {"expires_date": "2020-01-01T00:00:00Z", "product_identifier": "pro_monthly"},
            },
            purchases={
                "eventlens_standard": [
                    {"purchase_date": "2026-01-01T00:00:00Z", "store_transaction_identifier": "1000"},
                    {"purchase_date": "2026-05-01T00:00:00Z", "store_transaction_identifier": "2000"},
                ]
            },
        ),
    )
    result = providers.revenuecat.verify_subscription("owner-1", "eventlens_standard")
    assert result.success
    assert [e["id"] for e in result.active_entitlements] == ["pro"]
    assert result.transaction_id == "2000"


def test_revenuecat_transaction_cannot_be_reused(db_session, providers, revenuecat_stub):
    revenuecat_stub.add(
        "GET",
        "/v1/subscribers/owner-1",
        _subscriber(purchases={"eventlens_standard": [{"store_transaction_identifier": "tx-42"}]}),
    )
    payment = providers.revenuecat.record_purchase(
        db_session, "owner-1", "eventlens_standard", "standard", custom_plan(), 1999
    )
    assert payment.PaymentID == "tx-42"
    assert payment.Status == COMPLETED
    payment.ConsumedByEventID = "event-1"
    db_session.commit()

    with pytest.raises(ReplayError):
        providers.revenuecat.record_purchase(
            db_session, "owner-1", "eventlens_standard", "standard", custom_plan(), 1999
        )


def test_revenuecat_without_purchase_is_rejected(db_session, providers, revenuecat_stub):
    revenuecat_stub.add("GET", "/v1/subscribers/owner-1", _subscriber())
    with pytest.raises(ValidationError):
        providers.revenuecat.record_purchase(db_session, "owner-1", "eventlens_standard", "standard", custom_plan(), 0)


def test_revenuecat_cannot_create_intents(db_session, providers):
    with pytest.raises(ValidationError):
        providers.revenuecat.create_intent(db_session, "owner-1", "standard", custom_plan(), None)


def test_revenuecat_refunds_go_through_the_store(db_session, providers):
    with pytest.raises(ValidationError):
        providers.revenuecat.refund(db_session, "rc_txn_1", "requested")


def test_provider_base_requires_remote_hooks():
    with pytest.raises(TypeError):
        PaymentProvider()

    class HalfDone(PaymentProvider):
        def _create_remote(self, amount_cents, description, metadata, email, idempotency_key):
            return {}

    with pytest.raises(TypeError):
        HalfDone()


def test_unknown_provider(providers):
    with pytest.raises(ValidationError):
        providers.get("bitcoin")


def test_upgrade_intent_charges_declared_delta(db_session, providers, plan, make_event, stripe_api):
    event = make_event(final_price=10)
    result = providers.stripe.create_upgrade_intent(
        db_session, "owner-1", event.EventID, "standard", custom_plan(20, 100), 5.00
    )
    # Server delta is 5.00 (10 extra guests); the declared price is charged
    assert result.upgrade_delta_cents == 500
    assert result.amount_cents == 500
    params = stripe_api["calls"][-1][1]
    assert params["idempotency_key"].startswith(f"upgrade_owner-1_{event.EventID}_standard_")
    payment = db_session.get(Payment, result.provider_ref)
    assert payment.IsUpgrade and payment.TargetEventID == event.EventID


def test_upgrade_cannot_lower_price(db_session, providers, plan, make_event):
    event = make_event(final_price=50)
    with pytest.raises(ValidationError):
        providers.stripe.create_upgrade_intent(db_session, "owner-1", event.EventID, "standard", custom_plan(), None)


def test_upgrade_requires_owner(db_session, providers, plan, make_event):
    event = make_event(final_price=0)
    with pytest.raises(AuthorizationError):
        providers.stripe.create_upgrade_intent(db_session, "intruder", event.EventID, "standard", custom_plan(), None)


def test_payment_routes_need_identity(client):
    r = client.post("/payments/stripe/intents", json={"planId": "standard", "customPlan": custom_plan()})
    assert r.status_code == 401


def test_stripe_intent_route(client, auth_headers, plan, stripe_api):
    r = client.post(
        "/payments/stripe/intents",
        json={"planId": "standard", "customPlan": custom_plan(), "finalPrice": 10},
        headers=auth_headers("owner-1", email="owner@example.test"),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["provider"] == "stripe"
    assert body["amount"] == 10.0
    assert body["clientSecret"] == "pi_secret"

    r = client.get(f"/payments/stripe/{body['providerRef']}/status", headers=auth_headers("other-user"))
    assert r.status_code == 403
    assert r.json()["code"] == "forbidden"


def test_refund_route_is_admin_only(client, auth_headers, plan, stripe_api):
    r = client.post("/payments/stripe/pi_1/refund", json={}, headers=auth_headers("owner-1"))
    assert r.status_code == 403


def test_provider_routes_run_off_the_event_loop():
    from main import app

    # These read the request body themselves and hand the work to the threadpool
    offloaded = {"create_event", "update_event", "guest_upload"}
    blocking = [
        route.path
        for route in app.routes
        if route.path.startswith(("/payments/", "/events", "/admin/", "/guest/"))
        and inspect.iscoroutinefunction(getattr(route, "endpoint", None))
        and route.endpoint.__name__ not in offloaded
    ]
    assert blocking == []
