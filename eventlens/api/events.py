import json
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from db import get_db
from eventlens.core.dependencies import get_payments, get_storage, json_body, read_upload
from eventlens.core.errors import AuthorizationError
from eventlens.services import events as event_service
from eventlens.services.identity import Identity, require_identity
from eventlens.services.payments.registry import PaymentProviders
from eventlens.services.s3_storage import ObjectStorage
from eventlens.services.uploads import Upload

router = APIRouter()


async def _payload_and_files(request: Request) -> Tuple[Dict[str, Any], Optional[Upload], Optional[Upload]]:
    """Accept JSON (images as data URLs) or multipart with a ``payload`` JSON field."""
    ctype = request.headers.get("content-type", "").lower()
    if not ctype.startswith("multipart/form-data"):
        return await json_body(request), None, None
    form = await request.form()
    try:
        payload = json.loads(form.get("payload") or "{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="payload must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="payload must be a JSON object")
    overlay = await read_upload(form.get("overlayFile"))
    picture = await read_upload(form.get("eventPictureFile"))
    return payload, overlay, picture


@router.post("/events")
async def create_event(
    request: Request,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    storage: ObjectStorage = Depends(get_storage),
):
    if identity.is_anonymous:
        raise AuthorizationError("Sign in to create events")
    payload, overlay, picture = await _payload_and_files(request)
    # Provider and storage calls block; keep them off the event loop
    event = await run_in_threadpool(
        event_service.create_event,
        db,
        identity,
        payload,
        providers,
        storage,
        overlay_upload=overlay,
        picture_upload=picture,
    )
    return JSONResponse(event_service.event_to_dict(event), status_code=201)


@router.get("/events/{event_id}")
def get_event(
    event_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    event = event_service.get_event_for_owner(db, identity, event_id)
    return event_service.event_to_dict(event)


@router.patch("/events/{event_id}")
async def update_event(
    event_id: str,
    request: Request,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    storage: ObjectStorage = Depends(get_storage),
):
    patch, overlay, picture = await _payload_and_files(request)
    if not patch and overlay is None and picture is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    event = await run_in_threadpool(
        event_service.update_event,
        db,
        identity,
        event_id,
        patch,
        storage,
        overlay_upload=overlay,
        picture_upload=picture,
    )
    return event_service.event_to_dict(event)


@router.post("/events/{event_id}/upgrade")
def upgrade_event(
    event_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
    providers: PaymentProviders = Depends(get_payments),
    data: Dict[str, Any] = Depends(json_body),
):
    event = event_service.upgrade_event(
        db,
        identity,
        event_id,
        new_plan_id=str(data.get("planId") or ""),
        new_custom_plan=data.get("customPlan"),
        new_final_price=data.get("finalPrice"),
        payment_id=data.get("paymentId"),
        providers=providers,
    )
    return event_service.event_to_dict(event)


@router.get("/events/{event_id}/photos")
def list_event_photos(
    event_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity),
):
    photos = event_service.list_event_photos(db, identity, event_id)
    return {"eventId": event_id, "photos": [event_service.photo_to_dict(p) for p in photos]}
