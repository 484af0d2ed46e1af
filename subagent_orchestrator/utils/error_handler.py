"""
Centralized error handling: structured error responses and error statistics.
"""

import uuid
from typing import Any, Dict, List, Optional

from ..models.errors import (
    ErrorDetails, ErrorResponse, ErrorCategory, ErrorSeverity, OrchestratorError
)
from .logging import get_logger


class ErrorHandler:
    """Converts exceptions raised by commands into structured error responses."""

    def __init__(self):
        self.logger = get_logger(__name__)
        self.error_stats: Dict[str, int] = {}

    def handle(self, error: Exception, context: Optional[Dict[str, Any]] = None) -> ErrorResponse:
        """
        Build a standardized response for an error and log it.

        Args:
            error: Exception raised by a command or query
            context: Extra context (operation name, entity ids)

        Returns:
            ErrorResponse: Structured error with suggested recovery actions
        """
        error_details = self._create_error_details(error, context or {})
        self._log_error(error_details)
        self._update_error_stats(error_details.category.value)

        return ErrorResponse(
            error=error_details,
            suggested_actions=self._get_recovery_strategies(error_details)
        )

    def _create_error_details(self, error: Exception, context: Dict[str, Any]) -> ErrorDetails:
        """Create standardized error details."""
        if isinstance(error, OrchestratorError):
            category = error.category
            severity = error.severity
            message = error.message
            merged_context = {**error.context, **context}
        else:
            category = ErrorCategory.SYSTEM
            severity = ErrorSeverity.HIGH
            message = str(error) or type(error).__name__
            merged_context = dict(context)

        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            error_type=type(error).__name__,
            message=message,
            details=f"{type(error).__name__}: {message}",
            context=merged_context,
            recoverable=category not in (ErrorCategory.VALIDATION, ErrorCategory.SYSTEM)
        )

    def _get_recovery_strategies(self, error_details: ErrorDetails) -> List[str]:
        """Get suggested recovery strategies for an error."""
        if error_details.category == ErrorCategory.VALIDATION:
            return [
                "Check required fields",
                "Use a recognized role, specialization and priority",
                "Request at least one concurrent task slot"
            ]
        if error_details.category == ErrorCategory.NOT_FOUND:
            return ["Verify the entity id", "List entities to find current ids"]
        if error_details.category == ErrorCategory.INVALID_STATE:
            return ["Fetch the entity to inspect its current status"]
        if error_details.category == ErrorCategory.CONFLICT:
            return ["Stop the agent or wait for its active tasks to finish, then retry"]
        return []

    def _log_error(self, error_details: ErrorDetails):
        """Log error with a level matching its category."""
        fields = {
            "error_id": error_details.error_id,
            "category": error_details.category.value,
            "error_type": error_details.error_type,
            **{k: v for k, v in error_details.context.items() if isinstance(v, (str, int, float, bool))}
        }

        if error_details.category in (ErrorCategory.INVALID_STATE, ErrorCategory.CONFLICT):
            self.logger.warning(error_details.message, **fields)
        elif error_details.category in (ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND):
            self.logger.info(error_details.message, **fields)
        else:
            self.logger.error(error_details.message, **fields)

    def _update_error_stats(self, category: str):
        """Update error statistics."""
        self.error_stats[category] = self.error_stats.get(category, 0) + 1

    def get_error_stats(self) -> Dict[str, int]:
        """Get current error statistics."""
        return self.error_stats.copy()

    def reset_error_stats(self):
        """Reset error statistics."""
        self.error_stats.clear()


# Global error handler instance
error_handler = ErrorHandler()
