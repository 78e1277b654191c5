from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class MalformedInputError(ServiceError):
    """Payload could not be decoded at all (400)."""
    status_code = 400
    error_code = "validation_error"


class MissingSignatureError(MalformedInputError):
    """Auth request arrived without its detached signature (400)."""

    def __init__(self, message: str = "missing request signature header", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ValidationError(ServiceError):
    """Well-formed payload with semantically bad content (400)."""
    status_code = 400
    error_code = "validation_error"


class SignatureInvalidError(ServiceError):
    """Request signature did not verify against the submitted key (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "signature verification failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotEntitledError(ServiceError):
    """Device is unknown, pending or rejected; deliberately indistinguishable (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DeviceNotFoundError(NotFoundError):
    def __init__(self, message: str = "device not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenNotFoundError(NotFoundError):
    def __init__(self, message: str = "token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingTokenError(ServiceError):
    """No token was presented for verification (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "missing authorization header", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(ServiceError):
    """Token was genuine but its validity window has passed (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(ServiceError):
    """Token is malformed, forged, revoked or unknown (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "token invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "MalformedInputError",
    "MissingSignatureError",
    "ValidationError",
    "SignatureInvalidError",
    "NotEntitledError",
    "NotFoundError",
    "DeviceNotFoundError",
    "TokenNotFoundError",
    "MissingTokenError",
    "TokenExpiredError",
    "TokenInvalidError",
]
