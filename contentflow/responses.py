"""
ContentFlow Result Utilities
Standardized result format and error taxonomy for the engine boundary
"""
from pydantic import BaseModel
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar
from datetime import datetime, timezone

from .logging_config import engine_logger

T = TypeVar('T')


# ============================================================
# ERROR CODES
# ============================================================

NOT_FOUND = "NOT_FOUND"
STAGE_NOT_FOUND = "STAGE_NOT_FOUND"
FORBIDDEN = "FORBIDDEN"
INVALID_ACTION = "INVALID_ACTION"
MISSING_COMMENT = "MISSING_COMMENT"
WORKFLOW_INACTIVE = "WORKFLOW_INACTIVE"
EMPTY_WORKFLOW = "EMPTY_WORKFLOW"
MISSING_DELEGATE_TARGET = "MISSING_DELEGATE_TARGET"
STALE_STAGE = "STALE_STAGE"
REQUEST_TERMINAL = "REQUEST_TERMINAL"
DUPLICATE_APPROVAL = "DUPLICATE_APPROVAL"
CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
CANNOT_CANCEL_COMPLETED = "CANNOT_CANCEL_COMPLETED"
INVALID_RULE = "INVALID_RULE"
WORKFLOW_IN_USE = "WORKFLOW_IN_USE"
INVALID_INPUT = "INVALID_INPUT"
ROUTING_FALLBACK = "ROUTING_FALLBACK"


# ============================================================
# RESULT MODEL
# ============================================================

class EngineResult(BaseModel, Generic[T]):
    """Standard result wrapper returned by every public engine operation"""
    ok: bool = True
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: str = ""

    def __init__(self, **data):
        if "timestamp" not in data:
            data["timestamp"] = datetime.now(timezone.utc).isoformat()
        super().__init__(**data)

    def unwrap(self) -> T:
        """Return data, raising the recorded error if the result failed."""
        if not self.ok:
            raise EngineError(self.error or "Operation failed", self.error_code, self.details)
        return self.data


def success(data: Any = None) -> EngineResult:
    """Create success result"""
    return EngineResult(ok=True, data=data)


def failure(exc: "EngineError") -> EngineResult:
    """Create failed result from an engine error"""
    engine_logger.warning(
        f"Engine error: {exc.message}",
        error_code=exc.error_code,
        details=exc.details,
    )
    return EngineResult(
        ok=False,
        error=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


# ============================================================
# ERRORS
# ============================================================

class EngineError(Exception):
    """Expected, caller-recoverable engine failure with an error code"""

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Dict = None,
    ):
        self.message = message
        self.error_code = error_code or "ENGINE_ERROR"
        self.details = details or {}
        super().__init__(message)


class NotFoundError(EngineError):
    def __init__(self, resource: str = "Resource", id: str = None, error_code: str = NOT_FOUND):
        message = f"{resource} not found" if not id else f"{resource} '{id}' not found"
        super().__init__(message, error_code, {"resource": resource, "id": id})


class ForbiddenError(EngineError):
    """Authorization mismatch. Carries the roles that would have been accepted."""

    def __init__(self, message: str = "Access denied", acceptable_roles: Iterable[str] = ()):
        self.acceptable_roles: List[str] = sorted(acceptable_roles)
        super().__init__(message, FORBIDDEN, {"acceptable_roles": self.acceptable_roles})


class ValidationError(EngineError):
    def __init__(self, message: str, error_code: str, details: Dict = None):
        super().__init__(message, error_code, details)


class ConflictError(EngineError):
    def __init__(self, message: str = "Resource conflict", error_code: str = "CONFLICT", details: Dict = None):
        super().__init__(message, error_code, details)


class RoutingFallbackWarning(Warning):
    """Routing produced approvers from the static fallback rather than a rule match"""
    error_code = ROUTING_FALLBACK
