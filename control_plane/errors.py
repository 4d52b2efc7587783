"""
Control Plane Error Kinds

Every layer raises a typed ControlPlaneError. Only the HTTP ingress maps
errors to status codes (see ErrorKind.http_status).
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """Error kinds distinguished by the core."""
    INVALID_INPUT = "invalid_input"
    INVALID_SCOPE = "invalid_scope"
    DUPLICATE_IN_FLIGHT = "duplicate_in_flight"
    EMERGENCY_STOP_ACTIVE = "emergency_stop_active"
    CHANGE_FREEZE_ACTIVE = "change_freeze_active"
    SAFE_MODE_BLOCKED = "safe_mode_blocked"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    DRAIN_TIMEOUT = "drain_timeout"
    CANCELLED = "cancelled"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_SCOPE: 400,
    ErrorKind.DUPLICATE_IN_FLIGHT: 409,
    ErrorKind.EMERGENCY_STOP_ACTIVE: 409,
    ErrorKind.CHANGE_FREEZE_ACTIVE: 409,
    ErrorKind.SAFE_MODE_BLOCKED: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DEADLINE_EXCEEDED: 504,
    ErrorKind.DRAIN_TIMEOUT: 408,
    ErrorKind.CANCELLED: 499,
    ErrorKind.INTERNAL: 500,
}


class ControlPlaneError(Exception):
    """Base class for all typed control plane errors."""
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind.value, "detail": self.message, **self.details}


class InvalidInput(ControlPlaneError):
    kind = ErrorKind.INVALID_INPUT


class MissingConfigPath(InvalidInput):
    def __init__(self, message: str = "config_path is required"):
        super().__init__(message)


class InvalidConfigPath(InvalidInput):
    pass


class InvalidPriority(InvalidInput):
    pass


class InvalidScope(ControlPlaneError):
    kind = ErrorKind.INVALID_SCOPE


class DuplicateInFlight(ControlPlaneError):
    """An idempotency key collided with a Pending or Running job."""
    kind = ErrorKind.DUPLICATE_IN_FLIGHT

    def __init__(self, job_id: str, idempotency_key: str):
        super().__init__(
            f"job {job_id} with idempotency key {idempotency_key!r} is already in flight",
            {"job_id": job_id, "idempotency_key": idempotency_key},
        )
        self.job_id = job_id
        self.idempotency_key = idempotency_key


class EmergencyStopActive(ControlPlaneError):
    kind = ErrorKind.EMERGENCY_STOP_ACTIVE

    def __init__(self, reason: str = ""):
        message = "emergency stop active; new applies are halted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ChangeFreezeActive(ControlPlaneError):
    kind = ErrorKind.CHANGE_FREEZE_ACTIVE


class SafeModeBlocked(ControlPlaneError):
    kind = ErrorKind.SAFE_MODE_BLOCKED


class NotFound(ControlPlaneError):
    kind = ErrorKind.NOT_FOUND


class Conflict(ControlPlaneError):
    kind = ErrorKind.CONFLICT


class DeadlineExceeded(ControlPlaneError):
    kind = ErrorKind.DEADLINE_EXCEEDED


class DrainTimeout(ControlPlaneError):
    """Running jobs did not finish before a safe-drain deadline."""
    kind = ErrorKind.DRAIN_TIMEOUT


class RequestCancelled(ControlPlaneError):
    kind = ErrorKind.CANCELLED


class Internal(ControlPlaneError):
    kind = ErrorKind.INTERNAL
