"""Error taxonomy shared by the hub and the provisioning pipeline.

Every error carries a machine-readable ``kind`` and the HTTP status the API
renders it with. None of them is retried automatically.
"""


class HubError(Exception):
    """Base exception for all classhub errors."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class Unauthorized(HubError):
    """Raised when no credential, or an invalid one, is presented."""

    kind = "unauthorized"
    status_code = 401


class Forbidden(HubError):
    """Raised when an authenticated caller lacks the required role."""

    kind = "forbidden"
    status_code = 403


class ValidationError(HubError):
    """Raised when input is empty or malformed."""

    kind = "validation_error"
    status_code = 400


class ConflictError(HubError):
    """Raised when a username or login handle is already taken."""

    kind = "conflict"
    status_code = 409


class DependencyFailure(HubError):
    """Raised when the identity or relational store fails or times out."""

    kind = "dependency_failure"
    status_code = 503


class InternalError(HubError):
    """Raised for unexpected failures."""

    pass
