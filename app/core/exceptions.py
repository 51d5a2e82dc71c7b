from typing import Any, Optional

from fastapi import HTTPException, status


class ServiceError(HTTPException):
    """
    HTTPException carrying a machine-readable reason.

    The detail body is `{"error": <message>, "reason": <reason>, <reason>: true}`
    so clients can branch on a flag (e.g. `upgrade_required`) instead of
    parsing the message.
    """
    http_status: int = status.HTTP_400_BAD_REQUEST
    reason: str = "invalid_request"

    def __init__(self, message: str, headers: Optional[dict] = None, **extra: Any):
        self.message = message
        detail = {"error": message, "reason": self.reason, self.reason: True, **extra}
        super().__init__(status_code=self.http_status, detail=detail, headers=headers)


class InvalidRequestError(ServiceError):
    http_status = status.HTTP_400_BAD_REQUEST
    reason = "invalid_request"


class NotFoundError(ServiceError):
    http_status = status.HTTP_404_NOT_FOUND
    reason = "not_found"


class ForbiddenError(ServiceError):
    http_status = status.HTTP_403_FORBIDDEN
    reason = "forbidden"


class UpgradeRequiredError(ServiceError):
    http_status = status.HTTP_403_FORBIDDEN
    reason = "upgrade_required"


class DuplicateDownloadError(ServiceError):
    http_status = status.HTTP_409_CONFLICT
    reason = "already_exists"


class DownloadLimitError(ServiceError):
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    reason = "limit_reached"


class InvalidTransitionError(ServiceError):
    http_status = status.HTTP_409_CONFLICT
    reason = "invalid_transition"


class RangeNotSatisfiableError(ServiceError):
    http_status = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    reason = "range_not_satisfiable"

    def __init__(self, message: str, file_size: int):
        self.file_size = file_size
        super().__init__(
            message,
            headers={"Content-Range": f"bytes */{file_size}", "Accept-Ranges": "bytes"},
            file_size=file_size,
        )


class PaymentProviderError(ServiceError):
    http_status = status.HTTP_502_BAD_GATEWAY
    reason = "payment_provider_error"
