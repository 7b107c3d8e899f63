"""Exception types for the product recommender.

Only configuration mistakes reach the caller. Missing data and cold-start users
are handled inside the engine and surface as empty result lists.
"""

from typing import Any


class RecommenderError(Exception):
    """Base exception for recommender errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DataUnavailableError(RecommenderError):
    """Raised when an interaction or catalog source cannot be read."""

    def __init__(self, source: str, error: Exception):
        message = f"Failed to read from {source}: {error}"
        super().__init__(
            message=message,
            details={
                "source": source,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


class InvalidConfigurationError(RecommenderError, ValueError):
    """Raised when a caller passes options the engine cannot honor."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details)
