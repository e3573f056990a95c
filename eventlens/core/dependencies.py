"""Dependencies and request helpers for FastAPI routes."""
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from starlette.datastructures import UploadFile

from eventlens.services.payments.registry import PaymentProviders
from eventlens.services.s3_storage import ObjectStorage
from eventlens.services.uploads import Upload


async def get_storage(request: Request) -> ObjectStorage:
    """Provide the object storage service configured at startup."""
    return request.app.state.storage


async def get_payments(request: Request) -> PaymentProviders:
    """Provide the payment provider adapters built at startup."""
    return request.app.state.payments


async def json_body(request: Request) -> Dict[str, Any]:
    """Parsed JSON object body; an empty body reads as ``{}``."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return data


async def read_upload(value: Any) -> Optional[Upload]:
    """Convert a multipart form file into an Upload (None for missing/empty fields)."""
    if not isinstance(value, UploadFile) or not value.filename:
        return None
    data = await value.read()
    return Upload(data=data, content_type=value.content_type or "", filename=value.filename)
