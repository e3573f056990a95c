from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, TypedDict

GUEST_LIMIT_MAX = 10_000
PHOTO_POOL_MAX = 100_000
PHOTOS_PER_GUEST_MAX = 1_000
STORAGE_DAYS_MAX = 3_650


class Permissions(TypedDict):
    canViewGallery: bool
    canSharePhotos: bool
    canDownload: bool


class CustomPlan(TypedDict):
    guestLimit: int
    photoPool: int
    photosPerGuest: Optional[int]
    storageDays: int
    permissions: Permissions


class StorageOption(TypedDict):
    days: int
    price: Decimal


DEFAULT_PERMISSIONS: Permissions = {
    "canViewGallery": True,
    "canSharePhotos": True,
    "canDownload": False,
}


def _load(raw: Any) -> Any:
    if isinstance(raw, (bytes, str)):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        as_decimal = Decimal(str(value))
    except InvalidOperation:
        return None
    if as_decimal != as_decimal.to_integral_value():
        return None
    return int(as_decimal)


def parse_custom_plan(raw: Any) -> tuple[Optional[CustomPlan], List[str]]:
    """Coerce a client/stored customPlan into typed form.

    Returns ``(plan, errors)``; ``plan`` is None when required quantities are
    missing or non-integral. Bounds are checked separately by
    :func:`validate_custom_plan` so all violations can be reported together.
    """
    data = _load(raw)
    if not isinstance(data, dict):
        return None, ["customPlan must be an object"]

    errors: List[str] = []
    values: Dict[str, Optional[int]] = {}
    for key in ("guestLimit", "photoPool", "storageDays"):
        values[key] = _int_or_none(data.get(key))
        if values[key] is None:
            errors.append(f"customPlan.{key} must be a whole number")

    photos_per_guest = data.get("photosPerGuest")
    per_guest: Optional[int] = None
    if photos_per_guest not in (None, ""):
        per_guest = _int_or_none(photos_per_guest)
        if per_guest is None:
            errors.append("customPlan.photosPerGuest must be a whole number or null")

    perms_raw = data.get("permissions") or {}
    if not isinstance(perms_raw, dict):
        errors.append("customPlan.permissions must be an object")
        perms_raw = {}
    permissions: Permissions = {
        "canViewGallery": bool(perms_raw.get("canViewGallery", DEFAULT_PERMISSIONS["canViewGallery"])),
        "canSharePhotos": bool(perms_raw.get("canSharePhotos", DEFAULT_PERMISSIONS["canSharePhotos"])),
        "canDownload": bool(perms_raw.get("canDownload", DEFAULT_PERMISSIONS["canDownload"])),
    }

    if errors:
        return None, errors
    plan: CustomPlan = {
        "guestLimit": int(values["guestLimit"]),  # type: ignore[arg-type]
        "photoPool": int(values["photoPool"]),  # type: ignore[arg-type]
        "photosPerGuest": per_guest,
        "storageDays": int(values["storageDays"]),  # type: ignore[arg-type]
        "permissions": permissions,
    }
    return plan, []


def parse_storage_options(raw: Any) -> List[StorageOption]:
    """Normalize a plan's storage options (JSON text or list) into typed entries."""
    data = _load(raw)
    if not isinstance(data, list):
        return []
    out: List[StorageOption] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        days = _int_or_none(item.get("days"))
        if days is None:
            continue
        try:
            price = Decimal(str(item.get("price") or 0))
        except InvalidOperation:
            price = Decimal(0)
        out.append({"days": days, "price": price})
    return out


def validate_custom_plan(
    custom_plan: CustomPlan,
    plan_guest_limit: int,
    plan_photo_pool: int,
    storage_options: List[StorageOption],
    enforce_plan_floors: bool = True,
) -> List[str]:
    """Return every bound violation of ``custom_plan``; an empty list means valid.

    Floor and storage-option checks are skipped when ``enforce_plan_floors`` is
    False (in-app subscription purchases, whose plan is constructed from the
    client's own configuration).
    """
    violations: List[str] = []
    guest_limit = custom_plan["guestLimit"]
    photo_pool = custom_plan["photoPool"]
    per_guest = custom_plan.get("photosPerGuest")
    storage_days = custom_plan["storageDays"]

    if enforce_plan_floors:
        allowed_days = [o["days"] for o in storage_options]
        if storage_days not in allowed_days:
            violations.append(
                f"Invalid storage duration ({storage_days} days) for this plan. "
                f"Allowed: {', '.join(str(d) for d in allowed_days)}"
            )
        if guest_limit < plan_guest_limit:
            violations.append(
                f"Guest limit ({guest_limit}) cannot be less than plan minimum ({plan_guest_limit})"
            )
        if photo_pool < plan_photo_pool:
            violations.append(
                f"Photo pool ({photo_pool}) cannot be less than plan minimum ({plan_photo_pool})"
            )

    if guest_limit < 1:
        violations.append("Guest limit must be at least 1")
    if photo_pool < 1:
        violations.append("Photo pool must be at least 1")
    if storage_days < 1:
        violations.append("Storage days must be at least 1")
    if per_guest is not None and per_guest < 1:
        violations.append("Photos per guest must be at least 1")

    if guest_limit > GUEST_LIMIT_MAX:
        violations.append("Guest limit cannot exceed 10,000")
    if photo_pool > PHOTO_POOL_MAX:
        violations.append("Photo pool cannot exceed 100,000")
    if per_guest is not None and per_guest > PHOTOS_PER_GUEST_MAX:
        violations.append("Photos per guest cannot exceed 1,000")
    if storage_days > STORAGE_DAYS_MAX:
        violations.append("Storage days cannot exceed 10 years")
    return violations


def dump_custom_plan(custom_plan: CustomPlan) -> str:
    return json.dumps(custom_plan, sort_keys=True)


def load_custom_plan(raw: Any) -> Dict[str, Any]:
    """Read a stored snapshot without re-validating it; unknown shapes become ``{}``."""
    data = _load(raw)
    return data if isinstance(data, dict) else {}
