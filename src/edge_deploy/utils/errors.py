"""Error taxonomy and classification for deployment operations."""

import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern

import requests

from edge_deploy.utils.logging import get_logger, redact

logger = get_logger(__name__)


class ErrorKind(Enum):
    """Kinds of errors that can occur during a deployment."""
    VALIDATION = "validation_error"
    TRANSIENT_PLATFORM = "transient_platform_error"
    DATABASE_BINDING = "database_binding_error"
    CONFIGURATION = "configuration_error"
    DEPLOYMENT = "deployment_error"
    ROLLBACK = "rollback_error"
    CANCELLED = "cancelled"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Deployment cannot continue
    ERROR = "error"  # Phase failed but may be recovered
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


# Default retry eligibility per kind. Individual signatures may override it.
RETRYABLE_KINDS = {
    ErrorKind.VALIDATION: False,
    ErrorKind.TRANSIENT_PLATFORM: True,
    ErrorKind.DATABASE_BINDING: False,
    ErrorKind.CONFIGURATION: False,
    ErrorKind.DEPLOYMENT: True,
    ErrorKind.ROLLBACK: False,
    ErrorKind.CANCELLED: False,
}

SEVERITY_BY_KIND = {
    ErrorKind.VALIDATION: ErrorSeverity.CRITICAL,
    ErrorKind.TRANSIENT_PLATFORM: ErrorSeverity.WARNING,
    ErrorKind.DATABASE_BINDING: ErrorSeverity.ERROR,
    ErrorKind.CONFIGURATION: ErrorSeverity.CRITICAL,
    ErrorKind.DEPLOYMENT: ErrorSeverity.ERROR,
    ErrorKind.ROLLBACK: ErrorSeverity.WARNING,
    ErrorKind.CANCELLED: ErrorSeverity.WARNING,
}


@dataclass
class ErrorContext:
    """Context information for an error."""
    deployment_id: Optional[str] = None
    domain: Optional[str] = None
    phase: Optional[str] = None
    operation: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deployment_id': self.deployment_id,
            'domain': self.domain,
            'phase': self.phase,
            'operation': self.operation,
            'command': self.command,
            'exit_code': self.exit_code,
            'additional_info': self.additional_info,
        }


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.DEPLOYMENT,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            kind: Error kind from the deployment taxonomy
            severity: Error severity (derived from kind when omitted)
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
            retryable: Explicit retry eligibility, overriding the kind default
            details: Structured data recorded with the failed phase
        """
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.severity = severity or SEVERITY_BY_KIND[kind]
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        self.retryable = retryable
        self.details = details or {}

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.domain:
            lines.append(f"   Domain: {self.context.domain}")
        if self.context.phase:
            lines.append(f"   Phase: {self.context.phase}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'message': self.message,
            'kind': self.kind.value,
            'severity': self.severity.value,
            'context': self.context.to_dict(),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions,
        }


class ValidationError(DeploymentError):
    """Invalid deployment input (domain, credentials, environment)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.VALIDATION, **kwargs)


class TransientPlatformError(DeploymentError):
    """Network blip or rate limit reported by the platform."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.TRANSIENT_PLATFORM, **kwargs)


class DatabaseBindingError(DeploymentError):
    """Declared database binding does not match a provisioned database."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.DATABASE_BINDING, **kwargs)


class ConfigurationError(DeploymentError):
    """Malformed or unreadable configuration file."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.CONFIGURATION, **kwargs)


class RollbackError(DeploymentError):
    """Failure while undoing a completed action."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.ROLLBACK, **kwargs)


class CancelledError(DeploymentError):
    """Deployment aborted by a cancellation signal or timeout."""

    def __init__(self, message: str = "Deployment cancelled", **kwargs):
        super().__init__(message, kind=ErrorKind.CANCELLED, **kwargs)


class CapabilityError(DeploymentError):
    """Capability configuration is inconsistent."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.CONFIGURATION, **kwargs)


class LockError(DeploymentError):
    """Advisory lock on a configuration file could not be acquired."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.TRANSIENT_PLATFORM, **kwargs)


class PlatformCommandError(DeploymentError):
    """Platform CLI exited with a non-zero status or reported an error."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs
    ):
        super().__init__(message, kind=kwargs.pop('kind', ErrorKind.DEPLOYMENT), **kwargs)
        self.command = command or []
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.context.command = " ".join(self.command) or None
        self.context.exit_code = exit_code

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


@dataclass(frozen=True)
class ClassifiedError:
    """An error mapped onto the deployment taxonomy.

    Only ``ErrorClassifier`` creates these.
    """
    kind: ErrorKind
    message: str
    context: ErrorContext = field(default_factory=ErrorContext)
    retryable: bool = False
    recovery_action: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @property
    def severity(self) -> ErrorSeverity:
        return SEVERITY_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'retryable': self.retryable,
            'recoveryAction': self.recovery_action,
            'suggestions': list(self.suggestions),
            'context': self.context.to_dict(),
        }


@dataclass(frozen=True)
class ErrorSignature:
    """Message pattern mapped to an error kind."""
    pattern: Pattern
    kind: ErrorKind
    message: str
    suggestions: List[str]
    recovery_action: Optional[str] = None
    retryable: Optional[bool] = None


def _sig(regex: str, kind: ErrorKind, message: str, suggestions: List[str],
         recovery_action: Optional[str] = None, retryable: Optional[bool] = None) -> ErrorSignature:
    return ErrorSignature(
        pattern=re.compile(regex, re.IGNORECASE),
        kind=kind,
        message=message,
        suggestions=suggestions,
        recovery_action=recovery_action,
        retryable=retryable,
    )


class ErrorClassifier:
    """Maps raw failures onto the deployment error taxonomy."""

    # First match wins, so specific signatures come before broad keywords
    ERROR_SIGNATURES: List[ErrorSignature] = [
        # Database binding mismatches
        _sig(
            r"Couldn't find a D1 DB with the name or binding|Database '[^']+' not found|"
            r"Unknown database:|D1 database \S+ does not exist|Missing D1 database:",
            ErrorKind.DATABASE_BINDING,
            'Declared database binding does not match a provisioned database',
            [
                'Run: wrangler d1 list',
                'Check the [[d1_databases]] section of wrangler.toml',
                'Let binding recovery create or select the database',
            ],
            recovery_action='binding-recovery',
        ),
        _sig(
            r"binding \S* ?(?:not found|invalid|missing)|invalid binding",
            ErrorKind.DATABASE_BINDING,
            'Database binding configuration is invalid',
            ['Check binding, database_name and database_id in wrangler.toml'],
            recovery_action='binding-recovery',
        ),
        # Credentials and permissions
        _sig(
            r"authentication error|invalid api token|unauthorized|forbidden|"
            r"not logged in|credential|\[code: 10000\]|permission denied",
            ErrorKind.VALIDATION,
            'Platform credentials are missing, invalid or lack permissions',
            [
                'Verify CLOUDFLARE_API_TOKEN is set and not expired',
                'Verify CLOUDFLARE_ACCOUNT_ID matches the token',
                'Run: wrangler whoami',
            ],
        ),
        # Rate limiting and network blips
        _sig(
            r"rate limit|too many requests|\b429\b",
            ErrorKind.TRANSIENT_PLATFORM,
            'Platform API rate limit exceeded',
            ['Wait a moment and retry (automatic retry enabled)'],
        ),
        _sig(
            r"network (?:error|failure|request failed)|network is unreachable|timed? ?out|"
            r"econnrefused|econnreset|enotfound|fetch failed|service unavailable|bad gateway|"
            r"(?:http|status(?: code)?|code:?)\s*50[234]\b",
            ErrorKind.TRANSIENT_PLATFORM,
            'Network error talking to the platform',
            [
                'Check your internet connection',
                'Check the platform status page',
                'Retry the operation (automatic retry enabled)',
            ],
        ),
        # Configuration
        _sig(
            r"wrangler\.toml|toml parse|invalid toml|could not find zone|"
            r"zone not found|no such zone|route .* not found",
            ErrorKind.CONFIGURATION,
            'Platform configuration is invalid',
            [
                'Validate wrangler.toml syntax',
                'Verify the domain zone exists in the account',
                'Check the routes and custom domain settings',
            ],
        ),
        # Bundling is not fixed by retrying
        _sig(
            r"build failed|bundle|syntaxerror|compile|module not found|could not resolve",
            ErrorKind.DEPLOYMENT,
            'Worker bundle failed to build',
            [
                'Fix the reported build error locally',
                'Run: wrangler deploy --dry-run',
            ],
            retryable=False,
        ),
    ]

    TRANSIENT_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        subprocess.TimeoutExpired,
        requests.ConnectionError,
        requests.Timeout,
    )

    def __init__(self):
        self.logger = get_logger(__name__)

    def classify(
        self,
        raw_error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> ClassifiedError:
        """Classify a raised error.

        Args:
            raw_error: The exception raised by a phase hook or adapter
            context: Where the error occurred

        Returns:
            ClassifiedError carrying kind, retry eligibility and suggestions
        """
        context = self._merge_context(raw_error, context)

        if isinstance(raw_error, DeploymentError) and raw_error.kind not in (
            ErrorKind.DEPLOYMENT,
        ):
            return self._from_deployment_error(raw_error, context)

        text = self._error_text(raw_error)
        signature = self.match_signature(text)
        if signature is not None:
            retryable = signature.retryable
            if retryable is None:
                retryable = RETRYABLE_KINDS[signature.kind]
            if isinstance(raw_error, DeploymentError) and raw_error.retryable is not None:
                retryable = raw_error.retryable
            return ClassifiedError(
                kind=signature.kind,
                message=f"{signature.message}: {self._first_line(raw_error)}",
                context=context,
                retryable=retryable,
                recovery_action=signature.recovery_action,
                suggestions=list(signature.suggestions),
                cause=raw_error,
            )

        if isinstance(raw_error, DeploymentError):
            return self._from_deployment_error(raw_error, context)

        if isinstance(raw_error, self.TRANSIENT_EXCEPTIONS):
            return ClassifiedError(
                kind=ErrorKind.TRANSIENT_PLATFORM,
                message=f"{type(raw_error).__name__}: {self._first_line(raw_error)}",
                context=context,
                retryable=True,
                suggestions=['Retry the operation (automatic retry enabled)'],
                cause=raw_error,
            )

        return ClassifiedError(
            kind=ErrorKind.DEPLOYMENT,
            message=f"{type(raw_error).__name__}: {self._first_line(raw_error)}",
            context=context,
            retryable=RETRYABLE_KINDS[ErrorKind.DEPLOYMENT],
            suggestions=['Check logs for more details'],
            cause=raw_error,
        )

    def match_signature(self, text: str) -> Optional[ErrorSignature]:
        """Return the first error signature matching ``text``."""
        for signature in self.ERROR_SIGNATURES:
            if signature.pattern.search(text):
                return signature
        return None

    def classify_rollback_failure(
        self,
        raw_error: BaseException,
        action_type: str,
        context: Optional[ErrorContext] = None
    ) -> ClassifiedError:
        """Classify a failure raised while undoing an action."""
        context = self._merge_context(raw_error, context)
        context.operation = f"undo:{action_type}"
        return ClassifiedError(
            kind=ErrorKind.ROLLBACK,
            message=f"Rollback of '{action_type}' failed: {self._first_line(raw_error)}",
            context=context,
            retryable=False,
            suggestions=['Inspect the resource manually and clean it up'],
            cause=raw_error,
        )

    def log_error(self, error: ClassifiedError) -> None:
        """Log a classified error with the level matching its severity."""
        log_message = f"{error.kind.value}: {redact(error.message)}"
        extra = {
            key: value for key, value in (
                ('deployment_id', error.context.deployment_id),
                ('domain', error.context.domain),
                ('phase', error.context.phase),
            ) if value
        }

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message, extra=extra)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message, extra=extra)
        else:
            self.logger.info(log_message, extra=extra)

        self.logger.debug(f"Error details: {error.to_dict()}")

    def _from_deployment_error(
        self,
        error: DeploymentError,
        context: ErrorContext
    ) -> ClassifiedError:
        retryable = error.retryable
        if retryable is None:
            retryable = RETRYABLE_KINDS[error.kind]
        recovery_action = 'binding-recovery' if error.kind == ErrorKind.DATABASE_BINDING else None
        return ClassifiedError(
            kind=error.kind,
            message=error.message,
            context=context,
            retryable=retryable,
            recovery_action=recovery_action,
            suggestions=list(error.suggestions),
            cause=error,
        )

    @staticmethod
    def _merge_context(raw_error: BaseException, context: Optional[ErrorContext]) -> ErrorContext:
        merged = ErrorContext(**(context.to_dict() if context else {}))
        if isinstance(raw_error, DeploymentError):
            for key, value in raw_error.context.to_dict().items():
                if value is not None and getattr(merged, key) is None:
                    setattr(merged, key, value)
        return merged

    @staticmethod
    def _error_text(raw_error: BaseException) -> str:
        if isinstance(raw_error, PlatformCommandError):
            return f"{raw_error.message}\n{raw_error.output}"
        return str(raw_error)

    @staticmethod
    def _first_line(raw_error: BaseException) -> str:
        text = str(raw_error).strip()
        return text.splitlines()[0] if text else type(raw_error).__name__
