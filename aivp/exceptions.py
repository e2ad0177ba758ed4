"""
Custom exception hierarchy for the AIVP research core.
Provides structured error handling with user-friendly messages and proper categorization.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VALIDATION = "validation"
    BUSINESS_LOGIC = "business_logic"
    CONCURRENCY = "concurrency"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    PRIVACY = "privacy"


class AIVPError(Exception):
    """
    Base error for the research core.

    Carries an internal message, an optional user-facing message, a category,
    a severity and free-form details. ``retryable`` tells callers whether the
    same operation may be attempted again unchanged.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.user_message = user_message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        return self.message

    @property
    def error_code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value if self.category else None,
            "severity": self.severity.value if self.severity else None,
            "details": self.details,
            "retryable": self.retryable,
            "cause": str(self.cause) if self.cause else None,
        }


# Consent lifecycle errors
class ConsentLifecycleError(AIVPError):
    """Base class for consent lifecycle errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.BUSINESS_LOGIC)
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, **kwargs)


class InvalidTransitionError(ConsentLifecycleError):
    """Requested consent transition is not legal from the current role."""

    def __init__(self, operation: str, current_role: str, **kwargs):
        super().__init__(
            f"Cannot {operation} from role '{current_role}'",
            user_message="This action is not available for your current participation status.",
            details={"operation": operation, "current_role": current_role},
            **kwargs,
        )
        self.operation = operation
        self.current_role = current_role


class ConsentDetailsIncompleteError(ConsentLifecycleError):
    """Not every required consent item was acknowledged."""

    def __init__(self, missing_items: list[str], **kwargs):
        super().__init__(
            f"Missing required consent items: {', '.join(missing_items)}",
            user_message="Please confirm every consent statement to join the research study.",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details={"missing_items": list(missing_items)},
            **kwargs,
        )
        self.missing_items = list(missing_items)


class ProfileAlreadyCompleteError(ConsentLifecycleError):
    """Research profile was already submitted for the current identifier."""

    def __init__(self, participant_id: str, **kwargs):
        super().__init__(
            f"Research profile already complete for participant {participant_id}",
            user_message="Your research profile has already been submitted.",
            severity=ErrorSeverity.LOW,
            details={"participant_id": participant_id},
            **kwargs,
        )


# Concurrency errors
class ConcurrentModificationError(AIVPError):
    """Optimistic version check failed; re-read and retry."""

    retryable = True

    def __init__(self, entity_type: str, identifier: str, **kwargs):
        super().__init__(
            f"{entity_type} '{identifier}' was modified concurrently",
            user_message="Your request overlapped with another change. Please try again.",
            category=ErrorCategory.CONCURRENCY,
            severity=ErrorSeverity.MEDIUM,
            details={"entity_type": entity_type, "identifier": identifier},
            **kwargs,
        )


# Session lifecycle errors
class SessionLifecycleError(AIVPError):
    """Base class for session lifecycle misuse."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.BUSINESS_LOGIC)
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)


class SessionAlreadyActiveError(SessionLifecycleError):
    """Participant already has an active consultation."""

    def __init__(self, participant_id: str, session_id: str | None = None, **kwargs):
        super().__init__(
            f"Participant {participant_id} already has an active session",
            user_message="You already have a consultation in progress.",
            details={"participant_id": participant_id, "active_session_id": session_id},
            **kwargs,
        )


class SessionNotActiveError(SessionLifecycleError):
    """Session is already completed."""

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            f"Session {session_id} is not active",
            user_message="This consultation has already ended.",
            details={"session_id": session_id},
            **kwargs,
        )


# Lookup errors
class RecordNotFoundError(AIVPError):
    """Store record not found."""

    def __init__(self, entity_type: str, identifier: str, **kwargs):
        super().__init__(
            f"{entity_type} with identifier '{identifier}' not found",
            user_message="The requested item was not found.",
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.LOW,
            details={"entity_type": entity_type, "identifier": identifier},
            **kwargs,
        )


class ParticipantNotFoundError(RecordNotFoundError):
    def __init__(self, participant_id: str, **kwargs):
        super().__init__("Participant", participant_id, **kwargs)


class SessionNotFoundError(RecordNotFoundError):
    def __init__(self, session_id: str, **kwargs):
        super().__init__("Session", session_id, **kwargs)


# Infrastructure errors
class StoreUnavailableError(AIVPError):
    """Transient store failure or timeout; safe to retry with backoff."""

    retryable = True

    def __init__(self, operation: str, reason: str, **kwargs):
        super().__init__(
            f"Store unavailable during {operation}: {reason}",
            user_message="The service is temporarily unavailable. Please try again shortly.",
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            details={"operation": operation, "reason": reason},
            **kwargs,
        )


class AnonymousIdExhaustedError(AIVPError):
    """Could not mint a unique anonymous identifier."""

    def __init__(self, attempts: int, **kwargs):
        super().__init__(
            f"Could not mint a unique anonymous identifier after {attempts} attempts",
            user_message="We could not enrol you right now. Please try again.",
            category=ErrorCategory.PRIVACY,
            severity=ErrorSeverity.HIGH,
            details={"attempts": attempts},
            **kwargs,
        )


# External collaborator errors
class ExternalServiceError(AIVPError):
    """Base class for external collaborator errors."""

    def __init__(self, service_name: str, message: str, **kwargs):
        super().__init__(
            f"{service_name}: {message}",
            user_message="An external service is temporarily unavailable. Please try again later.",
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.HIGH,
            details={"service_name": service_name},
            **kwargs,
        )


class CompletionProviderError(ExternalServiceError):
    """Completion provider failed to produce the next patient utterance."""

    def __init__(self, message: str, **kwargs):
        super().__init__("Completion Provider", message, **kwargs)
        self.user_message = "The virtual patient is temporarily unavailable. Please try again."


class TokenizerError(ExternalServiceError):
    """Tokenizer or pricing lookup failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__("Tokenizer", message, **kwargs)
