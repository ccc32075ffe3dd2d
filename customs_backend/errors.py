"""Error taxonomy shared by the services and the HTTP layer.

Every error carries a machine-stable ``code`` and a human-readable
``details`` message; ``api.py`` renders them as
``{"success": false, "error": code, "details": details}``.
"""

from __future__ import annotations


class DeskError(Exception):
    status_code = 500
    code = "InternalError"

    def __init__(self, details: str = "", *, code: str | None = None, status_code: int | None = None):
        super().__init__(details or self.code)
        self.details = details
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationError(DeskError):
    status_code = 400
    code = "ValidationError"


class AuthError(DeskError):
    status_code = 401
    code = "Unauthorized"


class NotFoundError(DeskError):
    status_code = 404
    code = "NotFound"


class ConflictError(DeskError):
    status_code = 409
    code = "Conflict"


class ExternalServiceError(DeskError):
    status_code = 502
    code = "ExternalServiceError"


class StorageError(DeskError):
    status_code = 500
    code = "StorageUnavailable"
