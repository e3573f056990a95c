from decimal import Decimal

from eventlens.services.plan_schema import (
    load_custom_plan,
    parse_custom_plan,
    parse_storage_options,
    validate_custom_plan,
)

from conftest import custom_plan

OPTIONS = [{"days": 30, "price": Decimal(0)}, {"days": 90, "price": Decimal("5")}]


def test_parse_accepts_json_text_and_defaults_permissions():
    plan, errors = parse_custom_plan('{"guestLimit": "12", "photoPool": 200, "storageDays": 30}')
    assert errors == []
    assert plan["guestLimit"] == 12
    assert plan["photosPerGuest"] is None
    assert plan["permissions"] == {"canViewGallery": True, "canSharePhotos": True, "canDownload": False}


def test_parse_rejects_fractional_and_missing_values():
    plan, errors = parse_custom_plan({"guestLimit": 2.5, "photoPool": None, "storageDays": 30})
    assert plan is None
    assert "customPlan.guestLimit must be a whole number" in errors
    assert "customPlan.photoPool must be a whole number" in errors


def test_parse_rejects_non_object():
    plan, errors = parse_custom_plan("[1, 2]")
    assert plan is None and errors == ["customPlan must be an object"]


def test_validate_reports_every_violation():
    violations = validate_custom_plan(custom_plan(5, 50, storage_days=45), 10, 100, OPTIONS)
    assert len(violations) == 3
    assert any("storage duration" in v for v in violations)
    assert any("Guest limit (5)" in v for v in violations)
    assert any("Photo pool (50)" in v for v in violations)


def test_validate_upper_bounds():
    violations = validate_custom_plan(
        custom_plan(10_001, 100_001, photos_per_guest=1_001, storage_days=30), 10, 100, OPTIONS
    )
    assert "Guest limit cannot exceed 10,000" in violations
    assert "Photo pool cannot exceed 100,000" in violations
    assert "Photos per guest cannot exceed 1,000" in violations


def test_validate_without_floors_still_checks_minimums():
    violations = validate_custom_plan(
        custom_plan(1, 1, storage_days=3), 10, 100, OPTIONS, enforce_plan_floors=False
    )
    assert violations == []
    violations = validate_custom_plan(
        custom_plan(0, 1, storage_days=3), 10, 100, OPTIONS, enforce_plan_floors=False
    )
    assert violations == ["Guest limit must be at least 1"]


def test_storage_options_skip_bad_entries():
    options = parse_storage_options([{"days": 30, "price": "2.50"}, {"days": "x"}, "junk"])
    assert options == [{"days": 30, "price": Decimal("2.50")}]


def test_load_custom_plan_tolerates_garbage():
    assert load_custom_plan("not json") == {}
    assert load_custom_plan('{"guestLimit": 3}') == {"guestLimit": 3}
