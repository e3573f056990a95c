"""Fire-and-forget audit trail.

Entries go to the ``AuditLog`` table through their own session and are
mirrored on the ``audit`` logger. Recording never raises.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from eventlens.models.logging import AuditLog

audit = logging.getLogger("audit")
logger = logging.getLogger(__name__)

TYPE_EVENT = "event"
TYPE_PAYMENT = "payment"
TYPE_GUEST = "guest"
TYPE_PHOTO = "photo"
TYPE_DISCOUNT = "discount"
TYPE_ERROR = "error"

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_ERROR = "error"


def record(
    type: str,
    action: str,
    status: str = STATUS_SUCCESS,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    event_id: Optional[str] = None,
    event_name: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    from db import new_session, release_session

    audit.info(
        f"audit.{type}",
        extra={
            "action": action,
            "status": status,
            "user_id": user_id,
            "event_id": event_id,
            "details": details or {},
        },
    )
    db = None
    try:
        db = new_session()
        db.add(
            AuditLog(
                Type=type,
                Action=action,
                Status=status,
                UserID=user_id,
                UserEmail=user_email,
                EventID=event_id,
                EventName=event_name,
                Details=json.dumps(details or {}, default=str),
            )
        )
        db.commit()
    except Exception:
        logger.exception("audit.write_failed", extra={"action": action})
        if db is not None:
            try:
                db.rollback()
            except Exception:
                logger.debug("audit.rollback_failed", exc_info=True)
    finally:
        if db is not None:
            release_session(db)
