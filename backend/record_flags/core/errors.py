"""
Record flag error taxonomy and failure classification
"""
from enum import Enum
from typing import Any, Dict, Optional


class FailureCategory(str, Enum):
    """Categories for per-unit failures"""
    EXCEPTION = "exception"  # Unit raised while computing
    TIMEOUT = "timeout"  # Unit exceeded the configured timeout
    RESOURCE = "resource"  # Memory / recursion limits
    MALFORMED_RESULT = "malformed_result"  # Result could not be read as flags
    NOT_REGISTERED = "not_registered"  # No callable registered for the unit id


class RecordFlagsError(Exception):
    """Base class for record flag errors"""

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary"""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "metadata": self.metadata,
        }


class CatalogError(RecordFlagsError):
    """Catalog resolution failed; fatal to the run"""


class CatalogUnavailable(CatalogError):
    """The configuration store could not be reached"""


class CatalogMisconfigured(CatalogError):
    """The catalog returned descriptors that violate its invariants"""


class ProviderError(RecordFlagsError):
    """The shared data provider failed; fatal to the run"""

    def __init__(self, detail: str, unit_id: Optional[str] = None):
        super().__init__(detail, metadata={"unit_id": unit_id} if unit_id else None)
        self.detail = detail
        self.unit_id = unit_id


class UnitNotRegistered(RecordFlagsError):
    """No callable is registered for a unit id"""

    def __init__(self, unit_id: str, kind: str):
        super().__init__(
            f"No {kind} registered for unit '{unit_id}'",
            metadata={"unit_id": unit_id, "kind": kind},
        )
        self.unit_id = unit_id
        self.kind = kind


class DeadlineExceeded(RecordFlagsError):
    """A unit call outlived the configured timeout"""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Timed out after {timeout_seconds}s",
            metadata={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class UnitFailure(RecordFlagsError):
    """
    A failure local to one computation unit

    Never propagated past the invoker; it is carried as the reason of a
    Failure outcome.
    """

    def __init__(
        self,
        reason: str,
        category: FailureCategory = FailureCategory.EXCEPTION,
        unit_id: Optional[str] = None,
    ):
        super().__init__(reason, metadata={"unit_id": unit_id, "category": category.value})
        self.reason = reason
        self.category = category
        self.unit_id = unit_id


def classify_exception(exc: BaseException) -> FailureCategory:
    """
    Map an exception raised by a unit to a failure category

    Only DeadlineExceeded counts as a timeout. A TimeoutError raised by the
    unit itself is an ordinary exception and keeps its own message.
    """
    if isinstance(exc, DeadlineExceeded):
        return FailureCategory.TIMEOUT
    if isinstance(exc, (MemoryError, RecursionError)):
        return FailureCategory.RESOURCE
    if isinstance(exc, UnitNotRegistered):
        return FailureCategory.NOT_REGISTERED
    if isinstance(exc, UnitFailure):
        return exc.category
    return FailureCategory.EXCEPTION


def describe_exception(exc: BaseException) -> str:
    """Human-readable reason for an exception, falling back to its type name"""
    if isinstance(exc, RecordFlagsError):
        return exc.message
    text = str(exc).strip()
    if not isinstance(exc, Exception):
        # SystemExit(3) alone would read "3"
        return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
    return text or type(exc).__name__
