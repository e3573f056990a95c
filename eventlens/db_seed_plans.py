import json
from typing import List

from sqlalchemy.orm import Session

from db import SessionLocal
from eventlens.core.errors import ValidationError
from eventlens.models.plan import PricingPlan

PLANS = [
    # Entry plan; small gatherings
    {
        "PlanID": "basic",
        "Name": "Basic",
        "Description": "Up to 25 guests and 250 photos, 30 days of storage",
        "BasePrice": 0,
        "GuestLimit": 25,
        "PhotoPool": 250,
        "PhotosPerGuest": 10,
        "GuestOveragePrice": 0.50,
        "PhotoOveragePrice": 0.05,
        "StorageOptions": [{"days": 30, "price": 0}, {"days": 90, "price": 4.99}],
        "DefaultStorageDays": 30,
        "RevenueCatProductID": "eventlens_basic",
    },
    {
        "PlanID": "premium",
        "Name": "Premium",
        "Description": "Up to 100 guests and 2,000 photos, custom overlay",
        "BasePrice": 29.99,
        "GuestLimit": 100,
        "PhotoPool": 2000,
        "PhotosPerGuest": 25,
        "GuestOveragePrice": 0.25,
        "PhotoOveragePrice": 0.02,
        "StorageOptions": [
            {"days": 90, "price": 0},
            {"days": 180, "price": 9.99},
            {"days": 365, "price": 19.99},
        ],
        "DefaultStorageDays": 90,
        "RevenueCatProductID": "eventlens_premium",
    },
    # Weddings and large parties; no per-guest cap
    {
        "PlanID": "ultimate",
        "Name": "Ultimate",
        "Description": "Up to 300 guests, 10,000 photos, no per-guest cap",
        "BasePrice": 79.99,
        "GuestLimit": 300,
        "PhotoPool": 10000,
        "PhotosPerGuest": None,
        "GuestOveragePrice": 0.20,
        "PhotoOveragePrice": 0.01,
        "StorageOptions": [{"days": 365, "price": 0}, {"days": 730, "price": 24.99}],
        "DefaultStorageDays": 365,
        "RevenueCatProductID": "eventlens_ultimate",
    },
]


def check_plan_definition(plan_def: dict) -> List[str]:
    problems = []
    if int(plan_def["GuestLimit"]) > int(plan_def["PhotoPool"]):
        problems.append("Guest limit cannot be greater than photo pool")
    options = plan_def.get("StorageOptions") or []
    if not options:
        problems.append("At least one storage option is required")
    elif plan_def.get("DefaultStorageDays") not in [o.get("days") for o in options]:
        problems.append("Default storage days must match one of the storage options")
    return problems


def upsert_plan(db: Session, plan_def: dict) -> PricingPlan:
    problems = check_plan_definition(plan_def)
    if problems:
        raise ValidationError(f"Invalid plan {plan_def.get('PlanID')}", violations=problems)
    plan = db.query(PricingPlan).filter(PricingPlan.PlanID == plan_def["PlanID"]).first()
    if not plan:
        plan = PricingPlan(PlanID=plan_def["PlanID"])
        db.add(plan)
    plan.Name = plan_def["Name"]
    plan.Description = plan_def.get("Description")
    plan.BasePrice = plan_def["BasePrice"]
    plan.GuestLimit = int(plan_def["GuestLimit"])
    plan.PhotoPool = int(plan_def["PhotoPool"])
    plan.PhotosPerGuest = plan_def.get("PhotosPerGuest")
    plan.GuestOveragePrice = plan_def.get("GuestOveragePrice", 0)
    plan.PhotoOveragePrice = plan_def.get("PhotoOveragePrice", 0)
    plan.StorageOptions = json.dumps(plan_def.get("StorageOptions", []))
    plan.DefaultStorageDays = plan_def.get("DefaultStorageDays")
    plan.RevenueCatProductID = plan_def.get("RevenueCatProductID")
    plan.IsActive = True
    db.commit()
    return plan


def seed_plans(db: Session) -> List[str]:
    for p in PLANS:
        upsert_plan(db, p)
    return [p["PlanID"] for p in PLANS]


if __name__ == "__main__":
    db = SessionLocal()
    try:
        print("Seeded plans: ", ", ".join(seed_plans(db)))
    finally:
        db.close()
