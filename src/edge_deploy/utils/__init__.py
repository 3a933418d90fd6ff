"""Utility modules for logging, error classification and retries."""

from edge_deploy.utils.errors import (
    ErrorKind,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ValidationError,
    TransientPlatformError,
    DatabaseBindingError,
    ConfigurationError,
    RollbackError,
    CancelledError,
    CapabilityError,
    LockError,
    PlatformCommandError,
    ClassifiedError,
    ErrorClassifier,
)
from edge_deploy.utils.retry import RetryPolicy, RetryDecision, CircuitBreaker
from edge_deploy.utils.logging import get_logger, setup_logging, redact, LogContext

__all__ = [
    # Errors
    'ErrorKind',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ValidationError',
    'TransientPlatformError',
    'DatabaseBindingError',
    'ConfigurationError',
    'RollbackError',
    'CancelledError',
    'CapabilityError',
    'LockError',
    'PlatformCommandError',
    'ClassifiedError',
    'ErrorClassifier',

    # Retry
    'RetryPolicy',
    'RetryDecision',
    'CircuitBreaker',

    # Logging
    'get_logger',
    'setup_logging',
    'redact',
    'LogContext',
]
