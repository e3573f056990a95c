"""Guest participation: joining, uploads under quota, likes and gallery views.

Quota checks read and bump the counters on the locked Event row inside the
same transaction as the insert, so concurrent joins or uploads cannot push an
event past its limits.
"""
from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventlens.core.errors import (
    AuthorizationError,
    NotFoundError,
    QuotaExceededError,
    TemporalError,
    ValidationError,
)
from eventlens.core.settings import settings
from eventlens.models.event import Event, Guest, Photo, PhotoLike
from eventlens.services import audit as audit_sink
from eventlens.services.events import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    get_event,
    photo_to_dict,
    refresh_status,
)
from eventlens.services.identity import Identity
from eventlens.services.plan_schema import DEFAULT_PERMISSIONS, load_custom_plan
from eventlens.services.s3_storage import ObjectStorage
from eventlens.services.temporal import is_event_active, is_storage_expired
from eventlens.services.uploads import Upload, check_upload

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")


def _is_owner(event: Event, identity: Identity) -> bool:
    return str(event.UserID) == str(identity.user_id)


def _limits(event: Event) -> Tuple[int, int, Optional[int]]:
    plan = load_custom_plan(event.CustomPlan)
    guest_limit = plan.get("guestLimit")
    if guest_limit is None:
        guest_limit = settings.DEFAULT_GUEST_LIMIT
    photo_pool = plan.get("photoPool")
    if photo_pool is None:
        photo_pool = settings.DEFAULT_PHOTO_POOL
    per_guest = plan.get("photosPerGuest")
    return int(guest_limit), int(photo_pool), int(per_guest) if per_guest is not None else None


def _permissions(event: Event) -> Dict[str, bool]:
    perms = load_custom_plan(event.CustomPlan).get("permissions") or {}
    return {k: bool(perms.get(k, v)) for k, v in DEFAULT_PERMISSIONS.items()}


def _guest(db: Session, event_id: str, guest_id: str) -> Optional[Guest]:
    return (
        db.query(Guest)
        .populate_existing()
        .filter(Guest.EventID == str(event_id), Guest.GuestID == str(guest_id))
        .first()
    )


def _ensure_active(db: Session, event: Event, now: Optional[datetime], action: str) -> None:
    if not is_event_active(event, now):
        audit.info(
            f"guests.{action}.rejected",
            extra={"event_id": event.EventID, "reason": TemporalError.EVENT_ENDED},
        )
        refresh_status(db, event, now)
        raise TemporalError("This event has ended", TemporalError.EVENT_ENDED)


def _reject_quota(event: Event, identity: Identity, limit: str, current: int, allowed: int, message: str):
    audit.warning(
        "guests.quota.rejected",
        extra={
            "event_id": event.EventID,
            "guest_id": identity.user_id,
            "limit": limit,
            "current": current,
            "allowed": allowed,
        },
    )
    return QuotaExceededError(message, limit=limit, current=current, allowed=allowed)


def join(
    db: Session,
    event_id: str,
    identity: Identity,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Join an event and accept its terms; repeating the call is harmless."""
    event = get_event(db, event_id, for_update=True)
    if _is_owner(event, identity):
        db.commit()
        return {"eventId": event.EventID, "joined": True, "isOwner": True, "termsAccepted": True}

    _ensure_active(db, event, now, "join")

    guest = _guest(db, event.EventID, identity.user_id)
    if guest is not None:
        guest.TermsAccepted = True
        if name:
            guest.Name = str(name).strip()[:200]
        db.commit()
        return {"eventId": event.EventID, "joined": True, "isOwner": False, "termsAccepted": True}

    guest_limit, _, _ = _limits(event)
    current = int(event.GuestCount or 0)
    if current >= guest_limit:
        db.rollback()
        raise _reject_quota(
            event, identity, "guestLimit", current, guest_limit, "This event has reached its guest limit"
        )

    db.add(
        Guest(
            EventID=event.EventID,
            GuestID=str(identity.user_id),
            Name=(str(name).strip()[:200] if name else identity.name),
            TermsAccepted=True,
            PhotosUploaded=0,
            IsAnonymous=identity.is_anonymous,
        )
    )
    event.GuestCount = current + 1
    try:
        db.commit()
    except IntegrityError:
        # Same guest joined concurrently; their row is already counted
        db.rollback()
        if _guest(db, event.EventID, identity.user_id) is None:
            raise
        return {"eventId": event.EventID, "joined": True, "isOwner": False, "termsAccepted": True}

    audit.info(
        "guests.join.success",
        extra={"event_id": event.EventID, "guest_id": identity.user_id, "guest_count": current + 1},
    )
    audit_sink.record(
        audit_sink.TYPE_GUEST,
        "Guest joined event",
        user_id=identity.user_id,
        user_email=identity.email,
        event_id=event.EventID,
        event_name=event.Name,
    )
    return {"eventId": event.EventID, "joined": True, "isOwner": False, "termsAccepted": True}


def _check_upload_allowed(
    db: Session, event: Event, identity: Identity, now: Optional[datetime]
) -> Tuple[Optional[Guest], int, int]:
    """Raise if ``identity`` may not add a photo; returns (guest, pool used, guest uploads)."""
    owner = _is_owner(event, identity)
    _ensure_active(db, event, now, "upload")
    if is_storage_expired(event, now):
        db.rollback()
        raise TemporalError("Photo storage for this event has expired", TemporalError.STORAGE_EXPIRED)

    guest = _guest(db, event.EventID, identity.user_id)
    if not owner and (guest is None or not guest.TermsAccepted):
        db.rollback()
        raise AuthorizationError("Join the event and accept the terms before uploading")

    _, photo_pool, per_guest = _limits(event)
    pool_used = int(event.PhotoCount or 0)
    if pool_used >= photo_pool:
        db.rollback()
        raise _reject_quota(
            event, identity, "photoPool", pool_used, photo_pool, "This event's photo pool is full"
        )
    uploaded = int(guest.PhotosUploaded or 0) if guest is not None else 0
    if not owner and per_guest is not None and uploaded >= per_guest:
        db.rollback()
        raise _reject_quota(
            event, identity, "photosPerGuest", uploaded, per_guest, "You have reached your photo limit"
        )
    return guest, pool_used, uploaded


def upload_photo(
    db: Session,
    storage: ObjectStorage,
    event_id: str,
    identity: Identity,
    upload: Upload,
    caption: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Photo:
    """Store a guest photo if the event window, storage and quotas allow it.

    Quotas are checked twice: once without a lock so rejected uploads never
    reach storage, and again on the locked Event row after the blob is
    written. The lock is never held across the storage call.
    """
    event = get_event(db, event_id)
    _check_upload_allowed(db, event, identity, now)
    check_upload(upload, "photo")
    # Release the read transaction before talking to storage
    db.commit()

    photo_id = str(uuid.uuid4())
    key = f"events/{event.EventID}/photos/{photo_id}/photo-{int(time.time() * 1000)}.{upload.extension}"
    url = storage.put(key, upload.data, upload.content_type)

    try:
        event = get_event(db, event_id, for_update=True)
        guest, pool_used, uploaded = _check_upload_allowed(db, event, identity, now)
        photo = Photo(
            PhotoID=photo_id,
            EventID=event.EventID,
            GuestID=str(identity.user_id),
            GuestName=(guest.Name if guest is not None else None) or identity.name,
            PhotoUrl=url,
            StorageKey=key,
            ContentType=upload.content_type,
            SizeBytes=len(upload.data),
            Caption=str(caption)[:500] if caption else None,
            OverlayID=event.OverlayID,
            IsAnonymous=identity.is_anonymous,
            LikeCount=0,
        )
        db.add(photo)
        event.PhotoCount = pool_used + 1
        if guest is not None:
            guest.PhotosUploaded = uploaded + 1
        db.commit()
    except Exception:
        db.rollback()
        storage.delete(key)
        raise
    db.refresh(photo)

    audit.info(
        "guests.upload.success",
        extra={
            "event_id": event.EventID,
            "guest_id": identity.user_id,
            "photo_id": photo_id,
            "size": len(upload.data),
        },
    )
    audit_sink.record(
        audit_sink.TYPE_PHOTO,
        "Photo uploaded",
        user_id=identity.user_id,
        event_id=event.EventID,
        event_name=event.Name,
        details={"photoId": photo_id},
    )
    return photo


def _photo_for_like(db: Session, event_id: str, photo_id: str, identity: Identity) -> Photo:
    photo = db.query(Photo).with_for_update().filter(Photo.PhotoID == str(photo_id)).first()
    if photo is None:
        raise NotFoundError("Photo not found", resource="photo")
    if str(photo.EventID) != str(event_id):
        raise ValidationError("Photo does not belong to this event", violations=["photoId"])
    event = get_event(db, event_id)
    if not _is_owner(event, identity):
        guest = _guest(db, event.EventID, identity.user_id)
        if guest is None or not guest.TermsAccepted:
            raise AuthorizationError("Join the event before liking photos")
    return photo


def _like_row(db: Session, photo: Photo, guest_id: str) -> Optional[PhotoLike]:
    return (
        db.query(PhotoLike)
        .filter(PhotoLike.PhotoID == photo.PhotoID, PhotoLike.GuestID == str(guest_id))
        .first()
    )


def _add_like(db: Session, photo: Photo, identity: Identity) -> Dict[str, Any]:
    db.add(PhotoLike(PhotoID=photo.PhotoID, GuestID=str(identity.user_id)))
    photo.LikeCount = int(photo.LikeCount or 0) + 1
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("Photo already liked", violations=["photoId"])
    audit.info("guests.like.added", extra={"photo_id": photo.PhotoID, "guest_id": identity.user_id})
    return {"photoId": photo.PhotoID, "liked": True, "likeCount": int(photo.LikeCount)}


def _remove_like(db: Session, photo: Photo, like: PhotoLike, identity: Identity) -> Dict[str, Any]:
    db.delete(like)
    photo.LikeCount = max(0, int(photo.LikeCount or 0) - 1)
    db.commit()
    audit.info("guests.like.removed", extra={"photo_id": photo.PhotoID, "guest_id": identity.user_id})
    return {"photoId": photo.PhotoID, "liked": False, "likeCount": int(photo.LikeCount)}


def like_photo(db: Session, event_id: str, photo_id: str, identity: Identity) -> Dict[str, Any]:
    photo = _photo_for_like(db, event_id, photo_id, identity)
    if _like_row(db, photo, identity.user_id) is not None:
        db.rollback()
        raise ValidationError("Photo already liked", violations=["photoId"])
    return _add_like(db, photo, identity)


def unlike_photo(db: Session, event_id: str, photo_id: str, identity: Identity) -> Dict[str, Any]:
    photo = _photo_for_like(db, event_id, photo_id, identity)
    like = _like_row(db, photo, identity.user_id)
    if like is None:
        db.rollback()
        raise ValidationError("Photo not liked", violations=["photoId"])
    return _remove_like(db, photo, like, identity)


def toggle_like(db: Session, event_id: str, photo_id: str, identity: Identity) -> Dict[str, Any]:
    photo = _photo_for_like(db, event_id, photo_id, identity)
    like = _like_row(db, photo, identity.user_id)
    if like is None:
        return _add_like(db, photo, identity)
    return _remove_like(db, photo, like, identity)


def event_for_share_code(
    db: Session,
    share_code: str,
    identity: Optional[Identity] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Landing summary shown to a guest who opened the join link."""
    event = db.query(Event).filter(Event.ShareCode == str(share_code).strip().upper()).first()
    if event is None:
        raise NotFoundError("Event not found", resource="event")
    refresh_status(db, event, now)

    guest_limit, photo_pool, per_guest = _limits(event)
    guest = _guest(db, event.EventID, identity.user_id) if identity else None
    owner = identity is not None and _is_owner(event, identity)
    uploaded = int(guest.PhotosUploaded or 0) if guest is not None else 0
    pool_left = max(0, photo_pool - int(event.PhotoCount or 0))
    if owner or per_guest is None:
        pictures_left = pool_left
    else:
        pictures_left = max(0, min(per_guest - uploaded, pool_left))

    return {
        "eventId": event.EventID,
        "name": event.Name,
        "type": event.Type,
        "eventStartTime": event.EventStartTime,
        "eventEndTime": event.EventEndTime,
        "timeZone": event.TimeZone,
        "brandColor": event.BrandColor,
        "typography": event.Typography,
        "fontStyle": event.FontStyle,
        "fontSize": event.FontSize,
        "eventPictureUrl": event.EventPictureUrl,
        "overlayUrl": event.OverlayUrl,
        "eventStatus": STATUS_ACTIVE if is_event_active(event, now) else STATUS_EXPIRED,
        "storageExpired": is_storage_expired(event, now),
        "guestCount": int(event.GuestCount or 0),
        "guestLimit": guest_limit,
        "isFull": int(event.GuestCount or 0) >= guest_limit,
        "photosPerGuest": per_guest,
        "picturesLeft": pictures_left,
        "photosUploaded": uploaded,
        "termsAccepted": bool(guest.TermsAccepted) if guest is not None else owner,
        "joined": guest is not None or owner,
        "isOwner": owner,
        "permissions": _permissions(event),
    }


def _gallery_gate(
    db: Session, event_id: str, identity: Identity, now: Optional[datetime], gallery: bool
) -> Event:
    event = get_event(db, event_id)
    refresh_status(db, event, now)
    owner = _is_owner(event, identity)
    if not owner:
        guest = _guest(db, event.EventID, identity.user_id)
        if guest is None or not guest.TermsAccepted:
            raise AuthorizationError("Accept the event terms to view photos")
    if is_storage_expired(event, now):
        raise TemporalError("Photo storage for this event has expired", TemporalError.STORAGE_EXPIRED)
    if gallery and not owner and not _permissions(event)["canViewGallery"]:
        raise AuthorizationError("The gallery is not shared with guests for this event")
    return event


def _liked_ids(db: Session, photos: List[Photo], guest_id: str) -> set:
    if not photos:
        return set()
    rows = (
        db.query(PhotoLike.PhotoID)
        .filter(
            PhotoLike.GuestID == str(guest_id),
            PhotoLike.PhotoID.in_([p.PhotoID for p in photos]),
        )
        .all()
    )
    return {r[0] for r in rows}


def list_guest_photos(
    db: Session, event_id: str, identity: Identity, now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """The caller's own uploads, newest first."""
    event = _gallery_gate(db, event_id, identity, now, gallery=False)
    photos = (
        db.query(Photo)
        .filter(Photo.EventID == event.EventID, Photo.GuestID == str(identity.user_id))
        .order_by(Photo.CreatedAt.desc(), Photo.PhotoID)
        .all()
    )
    liked = _liked_ids(db, photos, identity.user_id)
    return [photo_to_dict(p, p.PhotoID in liked) for p in photos]


def live_gallery(
    db: Session, event_id: str, identity: Identity, now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    event = _gallery_gate(db, event_id, identity, now, gallery=True)
    photos = (
        db.query(Photo)
        .filter(Photo.EventID == event.EventID)
        .order_by(Photo.CreatedAt.desc(), Photo.PhotoID)
        .all()
    )
    liked = _liked_ids(db, photos, identity.user_id)
    return [photo_to_dict(p, p.PhotoID in liked) for p in photos]
