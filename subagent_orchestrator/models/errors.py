"""
Error handling models and exceptions for the Subagent Orchestrator.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    AGENT_COMMUNICATION = "agent_communication"
    SYSTEM = "system"


class ErrorDetails(BaseModel):
    """Detailed error information."""
    error_id: str = Field(..., min_length=1)
    category: ErrorCategory
    severity: ErrorSeverity
    error_type: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    details: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    recoverable: bool = True


class ErrorResponse(BaseModel):
    """Standardized error response returned by commands."""
    success: bool = False
    error: ErrorDetails
    suggested_actions: List[str] = Field(default_factory=list)


# Custom exceptions
class OrchestratorError(Exception):
    """Base exception for the Subagent Orchestrator."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs


class ValidationError(OrchestratorError):
    """Malformed input, e.g. an unknown role or zero capacity. Never retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, **kwargs)


class NotFoundError(OrchestratorError):
    """Unknown agent, task or workflow id."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.NOT_FOUND, ErrorSeverity.LOW, **kwargs)


class InvalidStateError(OrchestratorError):
    """Operation not legal in the entity's current state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.INVALID_STATE, ErrorSeverity.MEDIUM, **kwargs)


class ConflictError(OrchestratorError):
    """Operation conflicts with live state; the caller must resolve it first."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.CONFLICT, ErrorSeverity.MEDIUM, **kwargs)
