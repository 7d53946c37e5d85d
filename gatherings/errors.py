"""Error taxonomy for the gathering service.

Each error carries a machine-readable code and the HTTP status the API layer
answers with. Validation errors are raised before any write happens.
"""


class GatheringServiceError(Exception):
    code = "ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"success": False, "error": {"code": self.code, "message": self.message}}


class ValidationError(GatheringServiceError):
    code = "VALIDATION_ERROR"
    http_status = 400


class Unauthorized(GatheringServiceError):
    code = "UNAUTHORIZED"
    http_status = 401


class Forbidden(GatheringServiceError):
    code = "FORBIDDEN"
    http_status = 403


class NotFound(GatheringServiceError):
    code = "NOT_FOUND"
    http_status = 404


class Conflict(GatheringServiceError):
    code = "CONFLICT"
    http_status = 409


class DispatchError(GatheringServiceError):
    """Push transport failure. Never undoes a write that already committed."""

    code = "DISPATCH_ERROR"
    http_status = 500


class InternalError(GatheringServiceError):
    """Storage fault. The client only sees a generic message."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.cause = cause

    def to_response(self) -> dict:
        return {"success": False, "error": {"code": self.code, "message": "Storage failure"}}
