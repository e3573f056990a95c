"""Domain error taxonomy.

Services raise these; `main.py` renders them as JSON with the error's
status code, a stable `code` and any structured details.
"""
from typing import Any, Dict, List, Optional, Sequence


class EventLensError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class ValidationError(EventLensError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, violations: Optional[Sequence[str]] = None, **details: Any):
        self.violations: List[str] = list(violations or [])
        super().__init__(message, violations=self.violations or None, **details)


class NotFoundError(EventLensError):
    status_code = 404
    code = "not_found"


class AuthorizationError(EventLensError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str, fields: Optional[Sequence[str]] = None, **details: Any):
        self.fields: List[str] = list(fields or [])
        super().__init__(message, fields=self.fields or None, **details)


class QuotaExceededError(EventLensError):
    status_code = 409
    code = "quota_exceeded"

    def __init__(self, message: str, limit: str, current: int, allowed: int, **details: Any):
        self.limit = limit
        self.current = current
        self.allowed = allowed
        super().__init__(message, limit=limit, current=current, allowed=allowed, **details)


class TemporalError(EventLensError):
    code = "temporal_error"

    EVENT_ENDED = "event_ended"
    STORAGE_EXPIRED = "storage_expired"

    def __init__(self, message: str, reason: str, **details: Any):
        self.reason = reason
        super().__init__(message, reason=reason, **details)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 403 if self.reason == self.STORAGE_EXPIRED else 400


class PriceIntegrityError(EventLensError):
    status_code = 409
    code = "price_mismatch"


class ProviderError(EventLensError):
    status_code = 502
    code = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        retryable: bool = False,
        provider_detail: Optional[str] = None,
        **details: Any,
    ):
        self.provider = provider
        self.retryable = retryable
        self.provider_detail = provider_detail
        super().__init__(
            message,
            provider=provider,
            retryable=retryable,
            providerDetail=provider_detail,
            **details,
        )


class ReplayError(EventLensError):
    status_code = 409
    code = "transaction_already_used"
