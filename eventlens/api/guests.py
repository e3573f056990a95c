"""Guest-facing endpoints: landing page data, join, uploads, likes, galleries."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from db import get_db
from eventlens.core.dependencies import get_storage, json_body, read_upload
from eventlens.core.errors import ValidationError
from eventlens.services import guests as guest_service
from eventlens.services.events import photo_to_dict
from eventlens.services.identity import Identity, optional_identity, require_identity
from eventlens.services.s3_storage import ObjectStorage

router = APIRouter()


@router.get("/guest/events/{share_code}")
def guest_event(
    share_code: str,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(optional_identity),
):
    return guest_service.event_for_share_code(db, share_code, identity)


@router.post("/guest/events/{share_code}/join")
def guest_join(
    share_code: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    data: Dict[str, Any] = Depends(json_body),
):
    if data.get("termsAccepted") is not True:
        raise ValidationError("You must accept the terms to join", violations=["termsAccepted"])
    summary = guest_service.event_for_share_code(db, share_code, identity)
    return guest_service.join(db, summary["eventId"], identity, name=data.get("name"))


@router.get("/guest/events/{event_id}/photos")
def guest_photos(
    event_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    return {"eventId": event_id, "photos": guest_service.list_guest_photos(db, event_id, identity)}


@router.get("/guest/events/{event_id}/gallery")
def guest_gallery(
    event_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    return {"eventId": event_id, "photos": guest_service.live_gallery(db, event_id, identity)}


@router.post("/guest/events/{event_id}/photos")
async def guest_upload(
    event_id: str,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    storage: ObjectStorage = Depends(get_storage),
):
    upload = await read_upload(file)
    if upload is None:
        raise ValidationError("A photo file is required", violations=["file"])
    photo = await run_in_threadpool(
        guest_service.upload_photo, db, storage, event_id, identity, upload, caption=caption
    )
    return JSONResponse(photo_to_dict(photo), status_code=201)


@router.post("/guest/events/{event_id}/photos/{photo_id}/like")
def guest_like(
    event_id: str,
    photo_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    return guest_service.like_photo(db, event_id, photo_id, identity)


@router.delete("/guest/events/{event_id}/photos/{photo_id}/like")
def guest_unlike(
    event_id: str,
    photo_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    return guest_service.unlike_photo(db, event_id, photo_id, identity)


@router.post("/guest/events/{event_id}/photos/{photo_id}/toggle-like")
def guest_toggle_like(
    event_id: str,
    photo_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    return guest_service.toggle_like(db, event_id, photo_id, identity)
