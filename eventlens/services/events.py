"""Event lifecycle: creation, owner updates, upgrades and status resolution.

Events move one way from ``active`` to ``expired``. Storage expiry is a
separate flag computed from the plan snapshot; it never changes ``Status``.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventlens.core.errors import (
    AuthorizationError,
    NotFoundError,
    ReplayError,
    TemporalError,
    ValidationError,
)
from eventlens.models.event import Event, Photo
from eventlens.models.overlay import Overlay
from eventlens.models.payment import Payment
from eventlens.models.plan import PricingPlan
from eventlens.services import audit as audit_sink
from eventlens.services.discounts import apply_code, normalize_code, quote_discount
from eventlens.services.identity import Identity
from eventlens.services.payments.common import (
    COMPLETED,
    client_cents,
    is_free_ref,
)
from eventlens.services.payments.registry import PaymentProviders
from eventlens.services.plan_schema import (
    CustomPlan,
    dump_custom_plan,
    load_custom_plan,
    parse_custom_plan,
    validate_custom_plan,
)
from eventlens.services.pricing import PlanTerms, compute_price, from_cents, load_plan, to_cents
from eventlens.services.qr import generate_join_qr
from eventlens.services.s3_storage import ObjectStorage
from eventlens.services.temporal import (
    compute_event_window,
    is_event_active,
    is_storage_expired,
    normalize_instant,
    resolve_zone,
    storage_expiry_instant,
    to_naive_utc,
    utcnow,
)
from eventlens.services.uploads import Upload, check_upload, decode_data_url

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"

PAYMENT_METHODS = ("stripe", "paypal", "revenuecat", "free")

# camelCase patch key -> Event column; anything else is refused by update_event
MUTABLE_FIELDS = {
    "name": "Name",
    "type": "Type",
    "eventDate": "EventDate",
    "eventStartTime": "EventStartTime",
    "eventEndTime": "EventEndTime",
    "timeZone": "TimeZone",
    "brandColor": "BrandColor",
    "typography": "Typography",
    "fontStyle": "FontStyle",
    "fontSize": "FontSize",
    "overlayId": "OverlayID",
    "overlay": None,
    "eventPicture": None,
}
TIME_FIELDS = ("eventDate", "eventStartTime", "eventEndTime", "timeZone")

SHARE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SHARE_CODE_LENGTH = 8


def _ts() -> int:
    return int(time.time() * 1000)


def get_event(db: Session, event_id: str, for_update: bool = False) -> Event:
    q = db.query(Event)
    if for_update:
        # Re-read the row under the lock even if the session already holds it
        q = q.with_for_update().populate_existing()
    event = q.filter(Event.EventID == str(event_id)).first()
    if not event:
        raise NotFoundError("Event not found", resource="event")
    return event


def require_owner(event: Event, identity: Identity, action: str = "modify") -> None:
    if str(event.UserID) != str(identity.user_id):
        audit.warning(
            "events.owner_check.denied",
            extra={"event_id": event.EventID, "user_id": identity.user_id, "action": action},
        )
        raise AuthorizationError(f"Only the event owner can {action} this event")


def refresh_status(db: Session, event: Event, now: Optional[datetime] = None) -> str:
    """Flip a stored ``active`` status to ``expired`` once the event has ended."""
    if event.Status == STATUS_ACTIVE and not is_event_active(event, now):
        event.Status = STATUS_EXPIRED
        event.ExpiredAt = to_naive_utc(normalize_instant(now) if now else utcnow())
        db.commit()
        audit.info("events.status.expired_lazily", extra={"event_id": event.EventID})
    return event.Status


def generate_share_code(db: Session, length: int = SHARE_CODE_LENGTH) -> str:
    while True:
        code = "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(length))
        if not db.query(Event.EventID).filter(Event.ShareCode == code).first():
            return code


def resolve_overlay(
    db: Session,
    storage: ObjectStorage,
    user_id: str,
    overlay_id: Optional[str] = None,
    upload: Optional[Upload] = None,
) -> Optional[Overlay]:
    """Find an admin or user overlay by id, or stage a new one from an upload.

    New overlays are added to the session but not committed.
    """
    if upload is not None:
        check_upload(upload, "overlay")
        new_id = str(uuid.uuid4())
        key = f"overlays/{user_id}/{_ts()}.{upload.extension}"
        url = storage.put(key, upload.data, upload.content_type)
        overlay = Overlay(
            OverlayID=new_id,
            OwnerUserID=str(user_id),
            Name=(upload.filename or "Custom overlay")[:255],
            Url=url,
            StorageKey=key,
            IsActive=True,
        )
        db.add(overlay)
        return overlay
    if not overlay_id:
        return None
    overlay = (
        db.query(Overlay)
        .filter(
            Overlay.OverlayID == str(overlay_id),
            Overlay.IsActive,
            or_(Overlay.OwnerUserID.is_(None), Overlay.OwnerUserID == str(user_id)),
        )
        .first()
    )
    if overlay is None:
        raise NotFoundError("Overlay not found", resource="overlay", overlayId=str(overlay_id))
    return overlay


def _store_picture(storage: ObjectStorage, event_id: str, upload: Upload) -> str:
    check_upload(upload, "eventPicture")
    key = f"events/{event_id}/picture-{_ts()}.{upload.extension}"
    return storage.put(key, upload.data, upload.content_type)


def _window_fields(date_raw: Any, start: Any, end: Any, tz: Any, violations: List[str]) -> Optional[Dict[str, Any]]:
    try:
        window = compute_event_window(date_raw, start, end, tz)
    except ValueError as e:
        violations.append(str(e))
        return None
    return {
        "EventDate": to_naive_utc(window.start),
        "EventEndDate": to_naive_utc(window.end),
        "EventStartTime": str(start).strip(),
        "EventEndTime": str(end).strip(),
        "TimeZone": tz or "UTC",
    }


def _verify_payment(
    db: Session,
    providers: PaymentProviders,
    method: str,
    payment_id: Optional[str],
    user_id: str,
    expected_cents: int,
    has_discount: bool,
) -> Optional[Payment]:
    """Check a provider payment can pay for this event; nothing is written."""
    if not payment_id:
        if expected_cents <= 0:
            return None
        raise ValidationError("A payment reference is required for paid plans", violations=["paymentId"])

    payment = db.query(Payment).filter(Payment.PaymentID == str(payment_id)).first()
    if payment is None:
        raise NotFoundError("Payment not found", resource="payment")
    if str(payment.UserID) != str(user_id):
        raise AuthorizationError("Payment belongs to another user")
    if payment.ConsumedByEventID:
        raise ReplayError("This payment has already been used", paymentId=payment.PaymentID)
    if payment.IsUpgrade:
        raise ValidationError("Upgrade payments cannot create events", violations=["paymentId"])

    if not is_free_ref(payment.PaymentID):
        if payment.Provider != method:
            raise ValidationError(
                f"Payment was not made with {method}", violations=["paymentMethod"]
            )
        providers.get(method).get_status(db, payment.PaymentID)
    if payment.Status != COMPLETED:
        raise ValidationError(
            "Payment has not been completed", violations=["paymentId"], paymentStatus=payment.Status
        )
    providers.stripe.policy.verify_paid_amount(to_cents(payment.TotalAmount), expected_cents, has_discount)
    return payment


def create_event(
    db: Session,
    identity: Identity,
    payload: Dict[str, Any],
    providers: PaymentProviders,
    storage: ObjectStorage,
    overlay_upload: Optional[Upload] = None,
    picture_upload: Optional[Upload] = None,
) -> Event:
    """Validate, price, verify payment and persist a new event in one commit."""
    user_id = str(identity.user_id)
    policy = providers.stripe.policy
    violations: List[str] = []
    overlay_upload = overlay_upload or decode_data_url(payload.get("overlay"), "overlay")
    picture_upload = picture_upload or decode_data_url(payload.get("eventPicture"), "eventPicture")

    for key in ("name", "eventDate", "eventStartTime", "eventEndTime", "planId", "customPlan"):
        if payload.get(key) in (None, ""):
            violations.append(f"{key} is required")
    method = str(payload.get("paymentMethod") or "free").lower()
    if method not in PAYMENT_METHODS:
        violations.append(f"paymentMethod must be one of {', '.join(PAYMENT_METHODS)}")

    custom_plan: Optional[CustomPlan] = None
    if payload.get("customPlan") not in (None, ""):
        custom_plan, errors = parse_custom_plan(payload.get("customPlan"))
        violations.extend(errors)

    plan_id = str(payload.get("planId") or "")
    phantom = method == "revenuecat" and policy.trust_subscription_client_price
    plan: Optional[PlanTerms] = None
    plan_row: Optional[PricingPlan] = None
    if plan_id and custom_plan is not None:
        if phantom:
            plan_row = db.query(PricingPlan).filter(PricingPlan.PlanID == plan_id).first()
            plan = PlanTerms.phantom(plan_id, custom_plan)
        else:
            plan_row = load_plan(db, plan_id)
            plan = PlanTerms.from_row(plan_row)
        violations.extend(
            validate_custom_plan(
                custom_plan,
                plan.guest_limit,
                plan.photo_pool,
                plan.storage_options,
                enforce_plan_floors=not phantom,
            )
        )

    window = None
    if not any(payload.get(k) in (None, "") for k in ("eventDate", "eventStartTime", "eventEndTime")):
        window = _window_fields(
            payload.get("eventDate"),
            payload.get("eventStartTime"),
            payload.get("eventEndTime"),
            payload.get("timeZone") or "UTC",
            violations,
        )

    if violations or plan is None or custom_plan is None or window is None:
        audit.warning("events.create.invalid", extra={"user_id": user_id, "violations": violations})
        raise ValidationError("Invalid event data", violations=violations)

    # Pricing. Nothing has been written yet; every rejection below is clean.
    declared = client_cents(payload.get("finalPrice"))
    code = normalize_code(payload.get("discountCode"))
    transaction_id: Optional[str] = None
    if phantom:
        original_cents = declared or 0
        final_cents = original_cents
        discount = None
    else:
        original_cents = compute_price(plan, custom_plan)
        discount = quote_discount(db, code, original_cents) if code else None
        server_cents = discount.final_cents if discount else original_cents
        decision = policy.resolve_charge(
            server_cents,
            declared,
            has_discount=discount is not None,
            context={"user_id": user_id, "plan_id": plan_id, "discount_code": code, "stage": "create_event"},
        )
        final_cents = decision.amount_cents

    if method == "revenuecat":
        payment = providers.revenuecat.record_purchase(
            db,
            user_id,
            payload.get("productId") or (plan_row.RevenueCatProductID if plan_row else None),
            plan_id,
            custom_plan,
            final_cents,
            identity.email,
        )
        if not payment.PaymentID.startswith("rc_"):
            transaction_id = payment.PaymentID
    else:
        payment = _verify_payment(
            db,
            providers,
            method,
            payload.get("paymentId"),
            user_id,
            final_cents,
            discount is not None,
        )

    event_id = str(uuid.uuid4())
    # Set before the first flush: ShareCode is NOT NULL
    share_code = generate_share_code(db)
    event = Event(
        EventID=event_id,
        ShareCode=share_code,
        UserID=user_id,
        Name=str(payload["name"]).strip()[:255],
        Type=payload.get("type"),
        BrandColor=payload.get("brandColor"),
        Typography=payload.get("typography"),
        FontStyle=payload.get("fontStyle"),
        FontSize=payload.get("fontSize"),
        PlanID=plan_id,
        BasePlanName=plan_row.Name if plan_row is not None else plan.name,
        CustomPlan=dump_custom_plan(custom_plan),
        OriginalPrice=from_cents(original_cents),
        FinalPrice=from_cents(final_cents),
        PaymentID=payment.PaymentID if payment is not None else None,
        PaymentProvider=payment.Provider if payment is not None else "free",
        PaymentStatus=payment.Status if payment is not None else COMPLETED,
        RevenueCatTransactionID=transaction_id,
        Status=STATUS_ACTIVE,
        GuestCount=0,
        PhotoCount=0,
        **window,
    )
    db.add(event)

    if discount is not None:
        applied = apply_code(db, code, original_cents, event_id, user_id, commit=False)
        event.DiscountCode = applied.code
        event.DiscountType = applied.discount_type
        event.DiscountAmount = from_cents(applied.discount_cents)

    overlay = resolve_overlay(db, storage, user_id, payload.get("overlayId"), overlay_upload)
    if overlay is not None:
        event.OverlayID = overlay.OverlayID
        event.OverlayUrl = overlay.Url
        event.OverlayName = overlay.Name
    if picture_upload is not None:
        event.EventPictureUrl = _store_picture(storage, event_id, picture_upload)

    event.QrCodeUrl = generate_join_qr(share_code, storage)
    if payment is not None:
        payment.ConsumedByEventID = event_id

    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if transaction_id:
            raise ReplayError(
                "This purchase has already been used to create an event",
                transactionId=transaction_id,
            ) from e
        raise
    db.refresh(event)

    audit.info(
        "events.create.success",
        extra={
            "event_id": event_id,
            "user_id": user_id,
            "plan_id": plan_id,
            "final_cents": final_cents,
            "payment_provider": event.PaymentProvider,
        },
    )
    audit_sink.record(
        audit_sink.TYPE_EVENT,
        "Event created",
        user_id=user_id,
        user_email=identity.email,
        event_id=event_id,
        event_name=event.Name,
        details={"planId": plan_id, "finalPrice": float(from_cents(final_cents))},
    )
    if payment is not None and not payment.IsFreePlan:
        audit_sink.record(
            audit_sink.TYPE_PAYMENT,
            "Payment applied to event",
            user_id=user_id,
            user_email=identity.email,
            event_id=event_id,
            event_name=event.Name,
            details={"providerRef": payment.PaymentID, "provider": payment.Provider},
        )
    return event


def update_event(
    db: Session,
    identity: Identity,
    event_id: str,
    patch: Dict[str, Any],
    storage: ObjectStorage,
    overlay_upload: Optional[Upload] = None,
    picture_upload: Optional[Upload] = None,
) -> Event:
    """Apply an owner's patch. Any key outside the allow-list rejects the whole patch."""
    event = get_event(db, event_id)
    require_owner(event, identity, "update")

    refused = sorted(k for k in patch if k not in MUTABLE_FIELDS)
    if refused:
        audit.warning(
            "events.update.restricted_fields",
            extra={"event_id": event.EventID, "user_id": identity.user_id, "fields": refused},
        )
        audit_sink.record(
            audit_sink.TYPE_EVENT,
            "Restricted field update attempt",
            status=audit_sink.STATUS_FAILURE,
            user_id=identity.user_id,
            event_id=event.EventID,
            event_name=event.Name,
            details={"fields": refused},
        )
        raise AuthorizationError(
            "Cannot modify restricted fields: " + ", ".join(refused), fields=refused
        )

    changes: Dict[str, Any] = {}
    violations: List[str] = []
    if "name" in patch:
        name = str(patch.get("name") or "").strip()
        if not name:
            violations.append("name is required")
        changes["Name"] = name[:255]
    for key in ("type", "brandColor", "typography", "fontStyle", "fontSize"):
        if key in patch:
            changes[MUTABLE_FIELDS[key]] = patch[key]

    if any(k in patch for k in TIME_FIELDS):
        zone_before = event.TimeZone or "UTC"
        current_date = normalize_instant(event.EventDate)
        local_day = current_date.astimezone(resolve_zone(zone_before)).date() if current_date else None
        window = _window_fields(
            patch.get("eventDate", local_day.isoformat() if local_day else None),
            patch.get("eventStartTime", event.EventStartTime),
            patch.get("eventEndTime", event.EventEndTime),
            patch.get("timeZone", zone_before),
            violations,
        )
        if window:
            changes.update(window)

    if violations:
        raise ValidationError("Invalid event data", violations=violations)

    overlay_raw = decode_data_url(patch.get("overlay"), "overlay") if patch.get("overlay") else None
    overlay = resolve_overlay(
        db, storage, identity.user_id, patch.get("overlayId"), overlay_upload or overlay_raw
    )
    if overlay is not None:
        changes.update({"OverlayID": overlay.OverlayID, "OverlayUrl": overlay.Url, "OverlayName": overlay.Name})
    elif "overlayId" in patch and not patch.get("overlayId"):
        changes.update({"OverlayID": None, "OverlayUrl": None, "OverlayName": None})

    picture = picture_upload or (
        decode_data_url(patch.get("eventPicture"), "eventPicture") if patch.get("eventPicture") else None
    )
    if picture is not None:
        changes["EventPictureUrl"] = _store_picture(storage, event.EventID, picture)

    for column, value in changes.items():
        setattr(event, column, value)
    db.commit()
    db.refresh(event)

    audit.info(
        "events.update.success",
        extra={"event_id": event.EventID, "user_id": identity.user_id, "fields": sorted(patch)},
    )
    audit_sink.record(
        audit_sink.TYPE_EVENT,
        "Event updated",
        user_id=identity.user_id,
        event_id=event.EventID,
        event_name=event.Name,
        details={"fields": sorted(patch)},
    )
    return event


def _upgrade_payment(
    db: Session, identity: Identity, event: Event, payment_id: str, new_plan_id: str, for_update: bool = False
) -> Payment:
    q = db.query(Payment)
    if for_update:
        q = q.with_for_update().populate_existing()
    payment = q.filter(Payment.PaymentID == str(payment_id)).first()
    if payment is None:
        raise NotFoundError("Payment not found", resource="payment")
    if str(payment.UserID) != str(identity.user_id):
        raise AuthorizationError("Payment belongs to another user")
    if payment.ConsumedByEventID:
        raise ReplayError("This payment has already been used", paymentId=payment.PaymentID)
    if not payment.IsUpgrade or str(payment.TargetEventID) != str(event.EventID):
        raise ValidationError("Payment is not an upgrade for this event", violations=["paymentId"])
    if str(payment.PlanID) != str(new_plan_id):
        raise ValidationError("Payment was made for a different plan", violations=["planId"])
    return payment


def upgrade_event(
    db: Session,
    identity: Identity,
    event_id: str,
    new_plan_id: str,
    new_custom_plan: Any,
    new_final_price: Any,
    payment_id: str,
    providers: PaymentProviders,
    now: Optional[datetime] = None,
) -> Event:
    """Move an active event onto a new plan, paid by an upgrade payment.

    The new plan snapshot and declared final price are stored as given; bounds
    were not re-checked when the upgrade was priced either.
    """
    event = get_event(db, event_id)
    require_owner(event, identity, "upgrade")
    if not is_event_active(event, now):
        raise TemporalError("Cannot upgrade an event that has ended", TemporalError.EVENT_ENDED)

    custom_plan, errors = parse_custom_plan(new_custom_plan)
    if custom_plan is None:
        raise ValidationError("Invalid customPlan", violations=errors)
    if not payment_id:
        raise ValidationError("A payment reference is required", violations=["paymentId"])

    payment = _upgrade_payment(db, identity, event, payment_id, new_plan_id)
    if not is_free_ref(payment.PaymentID):
        # Sync with the provider before any row lock is taken
        providers.get(payment.Provider).get_status(db, payment.PaymentID)

    event = get_event(db, event_id, for_update=True)
    if not is_event_active(event, now):
        raise TemporalError("Cannot upgrade an event that has ended", TemporalError.EVENT_ENDED)
    payment = _upgrade_payment(db, identity, event, payment_id, new_plan_id, for_update=True)
    if payment.Status != COMPLETED:
        raise ValidationError(
            "Payment has not been completed", violations=["paymentId"], paymentStatus=payment.Status
        )

    plan_row = db.query(PricingPlan).filter(PricingPlan.PlanID == str(new_plan_id)).first()
    previous_plan = event.PlanID
    final_price = (
        from_cents(client_cents(new_final_price))
        if new_final_price not in (None, "")
        else payment.NewPlanPrice
    )
    event.PlanID = str(new_plan_id)
    event.BasePlanName = plan_row.Name if plan_row is not None else event.BasePlanName
    event.CustomPlan = dump_custom_plan(custom_plan)
    event.FinalPrice = final_price
    payment.ConsumedByEventID = event.EventID
    db.commit()
    db.refresh(event)

    audit.info(
        "events.upgrade.success",
        extra={
            "event_id": event.EventID,
            "user_id": identity.user_id,
            "from_plan": previous_plan,
            "to_plan": new_plan_id,
            "provider_ref": payment.PaymentID,
        },
    )
    audit_sink.record(
        audit_sink.TYPE_EVENT,
        "Event upgraded",
        user_id=identity.user_id,
        event_id=event.EventID,
        event_name=event.Name,
        details={"fromPlan": previous_plan, "toPlan": new_plan_id, "providerRef": payment.PaymentID},
    )
    return event


def get_event_for_owner(db: Session, identity: Identity, event_id: str, now: Optional[datetime] = None) -> Event:
    event = get_event(db, event_id)
    require_owner(event, identity, "view")
    refresh_status(db, event, now)
    return event


def list_event_photos(
    db: Session, identity: Identity, event_id: str, now: Optional[datetime] = None
) -> List[Photo]:
    event = get_event_for_owner(db, identity, event_id, now)
    if is_storage_expired(event, now):
        raise TemporalError("Photo storage for this event has expired", TemporalError.STORAGE_EXPIRED)
    return (
        db.query(Photo)
        .filter(Photo.EventID == event.EventID)
        .order_by(Photo.CreatedAt.desc(), Photo.PhotoID)
        .all()
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    instant = normalize_instant(value)
    return instant.isoformat().replace("+00:00", "Z") if instant else None


def event_to_dict(event: Event, now: Optional[datetime] = None) -> Dict[str, Any]:
    plan = load_custom_plan(event.CustomPlan)
    expiry = storage_expiry_instant(event)
    return {
        "eventId": event.EventID,
        "userId": event.UserID,
        "name": event.Name,
        "type": event.Type,
        "eventDate": _iso(event.EventDate),
        "eventEndDate": _iso(event.EventEndDate),
        "eventStartTime": event.EventStartTime,
        "eventEndTime": event.EventEndTime,
        "timeZone": event.TimeZone,
        "brandColor": event.BrandColor,
        "typography": event.Typography,
        "fontStyle": event.FontStyle,
        "fontSize": event.FontSize,
        "eventPictureUrl": event.EventPictureUrl,
        "overlayId": event.OverlayID,
        "overlayUrl": event.OverlayUrl,
        "overlayName": event.OverlayName,
        "planId": event.PlanID,
        "basePlanName": event.BasePlanName,
        "customPlan": plan,
        "finalPrice": float(event.FinalPrice or 0),
        "originalPrice": float(event.OriginalPrice or 0),
        "discountCode": event.DiscountCode,
        "discountAmount": float(event.DiscountAmount) if event.DiscountAmount is not None else None,
        "paymentId": event.PaymentID,
        "paymentProvider": event.PaymentProvider,
        "shareCode": event.ShareCode,
        "qrCodeUrl": event.QrCodeUrl,
        "status": event.Status,
        "eventStatus": STATUS_ACTIVE if is_event_active(event, now) else STATUS_EXPIRED,
        "storageExpired": is_storage_expired(event, now),
        "storageExpiresAt": expiry.isoformat().replace("+00:00", "Z") if expiry else None,
        "guestCount": int(event.GuestCount or 0),
        "photoCount": int(event.PhotoCount or 0),
        "guestLimit": plan.get("guestLimit"),
        "photoPool": plan.get("photoPool"),
    }


def photo_to_dict(photo: Photo, liked_by: Optional[bool] = None) -> Dict[str, Any]:
    out = {
        "photoId": photo.PhotoID,
        "eventId": photo.EventID,
        "guestId": photo.GuestID,
        "guestName": photo.GuestName,
        "isAnonymous": bool(photo.IsAnonymous),
        "photoUrl": photo.PhotoUrl,
        "caption": photo.Caption,
        "likeCount": int(photo.LikeCount or 0),
        "createdAt": _iso(photo.CreatedAt),
    }
    if liked_by is not None:
        out["likedByMe"] = liked_by
    return out
