from __future__ import annotations

from typing import Any, Mapping


class AdvisorError(RuntimeError):
    """Caller-facing failure carrying an HTTP status and a stable error code."""

    code = "ADVISOR_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class AdvisorRateLimitError(AdvisorError):
    code = "ADVISOR_PROVIDER_RATE_LIMIT"
    status_code = 429

    @property
    def retry_after_sec(self) -> int:
        return int(self.details.get("retryAfterSec", 60))


class AdvisorInvalidRequestError(AdvisorError):
    code = "ADVISOR_PROVIDER_INVALID_REQUEST"
    status_code = 500


class AdvisorTimeoutError(AdvisorError):
    code = "ADVISOR_PROVIDER_TIMEOUT"
    status_code = 504
