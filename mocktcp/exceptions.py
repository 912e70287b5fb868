"""
Custom Exception Hierarchy for the mock server

Provides structured exceptions for setup, stream and verification failures.
All custom exceptions inherit from MockServerError base class.
"""
from typing import List, Optional


class MockServerError(Exception):
    """
    Base exception for all mock server errors.

    All custom exceptions should inherit from this class to allow
    catching all mock server errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors

class ConfigurationError(MockServerError):
    """
    Invalid configuration or settings.

    Raised when server options fail validation.
    """
    pass


class ScriptError(ConfigurationError):
    """Action entry is malformed (unknown kind, bad arguments, bad hex)."""
    pass


# Fatal Test Setup Errors

class SetupError(MockServerError):
    """
    Listener could not be established.

    Raised from MockServer.start() with the underlying OSError as cause.
    """
    pass


class UnexpectedConnectionError(MockServerError):
    """
    More connections arrived than scripts were provided.

    Signals a broken test, not a runtime fault. Always fatal.
    """
    pass


# Connection Errors

class StreamError(MockServerError):
    """
    Read or write failure on an active connection.

    Connection-local: the connection is destroyed, the server keeps running.
    """
    pass


class IdleTimeoutError(MockServerError):
    """Connection waited longer than the idle timeout for its current action."""
    pass


# Verification Errors

class VerificationMismatch(MockServerError):
    """
    Received bytes differ from the expected bytes.

    Mismatches are recorded as failed checks. This is only raised by
    CheckRecorder.assert_all_passed() or by a fail-fast reporter.
    """
    def __init__(self, message: str, labels: Optional[List[str]] = None):
        super().__init__(message, {"labels": labels or []})
        self.labels = labels or []
