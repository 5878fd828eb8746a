"""Error taxonomy shared by the ledger, the dispatch gate and the callback routes.

Every error carries the HTTP status it maps to and a stable ``code``. Messages on
anything other than validation and credit errors stay generic; the detail goes to
the server log.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


GENERIC_MESSAGE = "Something went wrong. Please try again later"


class AppError(Exception):
    status_code = 500
    code = "internal_error"
    message = GENERIC_MESSAGE
    headers: Optional[Dict[str, str]] = None

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def with_headers(self, headers: Dict[str, str]) -> "AppError":
        self.headers = {**(self.headers or {}), **headers}
        return self

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        body.update(self.details)
        return {"success": False, "error": body}


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    message = "Invalid request"


class Unauthorized(AppError):
    status_code = 401
    code = "unauthorized"
    message = "Please sign in to continue"


class InsufficientCredits(AppError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            required=required,
            available=available,
        )


class SignatureInvalid(AppError):
    status_code = 403
    code = "invalid_signature"
    message = "Invalid signature"


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class RateLimited(AppError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, headers: Optional[Dict[str, str]] = None) -> None:
        self.retry_after = retry_after
        self.headers = dict(headers or {})
        self.headers["Retry-After"] = str(retry_after)
        super().__init__(retry_after=retry_after)


class UpstreamDispatchFailure(AppError):
    status_code = 502
    code = "dispatch_failed"
    message = "Failed to start processing. Please try again"


class InternalError(AppError):
    pass
