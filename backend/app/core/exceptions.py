"""
SilentLine - Exception Hierarchy

Structured exceptions for consistent error handling across the hub.
All exceptions include error codes for API and websocket error replies.
"""

from typing import Optional


class DispatchHubError(Exception):
    """Base exception for all dispatch hub errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Call Session Errors
# =============================================================================

class CallSessionError(DispatchHubError):
    """Error related to call session management."""
    code = "CALL_SESSION_ERROR"
    status_code = 400


class DuplicateCallError(CallSessionError):
    """A live session already exists for this call id."""
    code = "DUPLICATE_CALL"
    status_code = 409


class CallNotFoundError(CallSessionError):
    """No live session for this call id."""
    code = "CALL_NOT_FOUND"
    status_code = 404


# =============================================================================
# Analysis Errors
# =============================================================================

class AnalysisError(DispatchHubError):
    """External triage analysis call failed."""
    code = "ANALYSIS_ERROR"
    status_code = 502


class AnalysisTimeoutError(AnalysisError):
    """External analysis call timed out."""
    code = "ANALYSIS_TIMEOUT"
    status_code = 504


class AnalysisRateLimitedError(AnalysisError):
    """External analysis API rejected the call due to quota/rate limit."""
    code = "ANALYSIS_RATE_LIMITED"
    status_code = 429


class MalformedAnalysisResponseError(AnalysisError):
    """External analysis API returned something we could not parse."""
    code = "ANALYSIS_MALFORMED_RESPONSE"


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DispatchHubError):
    """Input validation error."""
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidMessageError(ValidationError):
    """Invalid wire message format."""
    code = "INVALID_MESSAGE"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(DispatchHubError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
