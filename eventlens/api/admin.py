import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from db import get_db
from eventlens.db_seed_plans import seed_plans
from eventlens.jobs.expire_events_job import run_expiry_sweep
from eventlens.services.identity import Identity, require_admin

audit = logging.getLogger("audit")

router = APIRouter()


@router.post("/admin/expire-events")
def admin_expire_events(db: Session = Depends(get_db), admin: Identity = Depends(require_admin)):
    expired = run_expiry_sweep(db)
    audit.info("admin.expire_events", extra={"user_id": admin.user_id, "expired": expired})
    return {"ok": True, "expired": expired}


@router.post("/admin/seed-plans")
def admin_seed_plans(db: Session = Depends(get_db), admin: Identity = Depends(require_admin)):
    plans = seed_plans(db)
    audit.info("admin.seed_plans", extra={"user_id": admin.user_id, "plans": plans})
    return {"ok": True, "plans": plans}
