"""
Speed test error taxonomy.

Every error carries a stable ``code`` (shown to clients) and the HTTP status
it maps to.
"""


class VelocityError(Exception):
    """Base class for measurement errors"""

    code = "Error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {
            "status": "failed",
            "error": self.code,
            "message": self.message,
        }


class InvalidRequest(VelocityError):
    """Request parameters out of range"""

    code = "InvalidRequest"
    status_code = 400


class CapacityError(VelocityError):
    """Registry is full; the client should retry later"""

    code = "Capacity"
    status_code = 503


class SessionNotFound(VelocityError):
    code = "NotFound"
    status_code = 404


class SessionTimeout(VelocityError):
    """Session deadline elapsed before the requested phase could run"""

    code = "Timeout"
    status_code = 408


class StalledTransfer(VelocityError):
    """Too many consecutive empty windows, the connection is considered dead"""

    code = "StalledTransfer"
    status_code = 502


class ClientCancelled(VelocityError):
    code = "ClientCancelled"
    status_code = 499


class PhaseOrderError(VelocityError):
    """A phase was requested out of sequence"""

    code = "InvariantViolation"
    status_code = 409


class SessionClosed(VelocityError):
    code = "SessionClosed"
    status_code = 409


class PayloadTooLarge(VelocityError):
    code = "PayloadTooLarge"
    status_code = 413
