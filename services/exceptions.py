from typing import Optional


class SigningError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ConfigurationError(SigningError):
    status_code = 500
    code = "not_configured"


class Unauthorized(SigningError):
    status_code = 401
    code = "unauthorized"


class PermissionDenied(SigningError):
    status_code = 403
    code = "permission_denied"


class InvalidRequest(SigningError):
    status_code = 400
    code = "invalid_request"


class NotFound(SigningError):
    status_code = 404
    code = "not_found"


class IllegalTransition(SigningError):
    status_code = 409
    code = "illegal_transition"


class StorageError(SigningError):
    status_code = 500
    code = "storage_error"


class DeliveryFailed(SigningError):
    status_code = 502
    code = "provider_error"

    def __init__(self, result):
        super().__init__(result.message, code=result.error_kind)
        self.result = result
        if result.error_kind == "not_configured":
            self.status_code = 500
        elif result.error_kind == "invalid_request":
            self.status_code = 400


class RenderFailed(SigningError):
    status_code = 500
    code = "render_failed"
