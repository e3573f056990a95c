import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from eventlens.models.event import Event
from eventlens.services.events import STATUS_ACTIVE, STATUS_EXPIRED
from eventlens.services.temporal import is_event_active, normalize_instant, to_naive_utc, utcnow

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")


def run_expiry_sweep(db: Session, now: Optional[datetime] = None) -> int:
    """Flip every ended ``active`` event to ``expired`` and return how many changed.

    Reads also expire events lazily, so a missed run only delays the flip.
    """
    current = normalize_instant(now) if now is not None else utcnow()
    flipped = 0
    events = db.query(Event).filter(Event.Status == STATUS_ACTIVE).all()
    for event in events:
        try:
            if is_event_active(event, current):
                continue
            event.Status = STATUS_EXPIRED
            event.ExpiredAt = to_naive_utc(current)
            db.commit()
            flipped += 1
        except Exception:
            db.rollback()
            logger.exception("jobs.expire_events.event_failed", extra={"event_id": event.EventID})
    audit.info("jobs.expire_events.done", extra={"checked": len(events), "expired": flipped})
    return flipped
