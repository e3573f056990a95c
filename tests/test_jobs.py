from datetime import timedelta

import pytest

from eventlens.core.errors import ValidationError
from eventlens.db_seed_plans import PLANS, check_plan_definition, seed_plans, upsert_plan
from eventlens.jobs.expire_events_job import run_expiry_sweep
from eventlens.models import PricingPlan, User

from conftest import utcnow_naive


def test_expiry_sweep_flips_only_ended_events(db_session, make_event):
    now = utcnow_naive()
    ended = make_event(start=now - timedelta(hours=6), end=now - timedelta(hours=1))
    running = make_event()
    already = make_event(start=now - timedelta(days=2), end=now - timedelta(days=1), status="expired")

    assert run_expiry_sweep(db_session) == 1
    for event in (ended, running, already):
        db_session.refresh(event)
    assert ended.Status == "expired"
    assert ended.ExpiredAt is not None
    assert running.Status == "active"
    assert already.ExpiredAt is None

    # Running again changes nothing
    assert run_expiry_sweep(db_session) == 0


def test_expiry_sweep_at_given_instant(db_session, make_event):
    event = make_event()
    assert run_expiry_sweep(db_session, now=utcnow_naive() + timedelta(days=1)) == 1
    db_session.refresh(event)
    assert event.Status == "expired"


def test_seed_plans_is_idempotent(db_session):
    assert seed_plans(db_session) == [p["PlanID"] for p in PLANS]
    seed_plans(db_session)
    assert db_session.query(PricingPlan).count() == len(PLANS)
    premium = db_session.get(PricingPlan, "premium")
    assert premium.IsActive
    assert premium.RevenueCatProductID == "eventlens_premium"


def test_seeded_plans_are_consistent():
    for plan_def in PLANS:
        assert check_plan_definition(plan_def) == []


def test_upsert_rejects_inconsistent_plan(db_session):
    plan_def = dict(PLANS[0], PlanID="broken", GuestLimit=500, PhotoPool=100, DefaultStorageDays=7)
    with pytest.raises(ValidationError) as exc:
        upsert_plan(db_session, plan_def)
    assert len(exc.value.violations) == 2
    assert db_session.get(PricingPlan, "broken") is None


def test_admin_routes(client, db_session, auth_headers, make_event):
    db_session.add(User(UserID="admin-1", Email="admin@example.test", IsAdmin=True))
    db_session.commit()
    now = utcnow_naive()
    make_event(start=now - timedelta(hours=6), end=now - timedelta(hours=1))

    assert client.post("/admin/expire-events", headers=auth_headers("owner-1")).status_code == 403
    r = client.post("/admin/expire-events", headers=auth_headers("admin-1"))
    assert r.status_code == 200
    assert r.json() == {"ok": True, "expired": 1}

    r = client.post("/admin/seed-plans", headers=auth_headers("admin-1"))
    assert r.json()["plans"] == ["basic", "premium", "ultimate"]
