"""
Error taxonomy, classification and collection for SIS attendance syncs.
"""

import asyncio
import logging
import socket
import ssl
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional, Iterator

import aiohttp
from sqlalchemy.exc import SQLAlchemyError


# Configure SIS-specific logger
sis_logger = logging.getLogger('sis_integration')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncErrorKind(str, Enum):
    """Severity decided once by the classifier and never re-interpreted."""
    FATAL = "FATAL"
    RECOVERABLE = "RECOVERABLE"


class SISErrorCategory:
    """Error categories for better classification."""
    AUTHENTICATION = "authentication"
    CONNECTIVITY = "connectivity"
    DATA_VALIDATION = "data_validation"
    RATE_LIMITING = "rate_limiting"
    CONFIGURATION = "configuration"
    PROVIDER_ERROR = "provider_error"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class SISError(Exception):
    """Base exception for SIS integration errors with enhanced metadata."""

    category = SISErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'message': self.message,
            'category': self.category,
            'error_type': type(self).__name__,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


class ConfigurationError(SISError):
    """Bad run configuration; always fatal and raised before any remote call."""
    category = SISErrorCategory.CONFIGURATION


class InvalidRangeError(ConfigurationError):
    """Start date is after end date."""


class InvalidConfigurationError(ConfigurationError):
    """Non-positive sizes, unknown schools or incomplete provider settings."""


class SISAuthenticationError(SISError):
    """Authentication-related errors."""
    category = SISErrorCategory.AUTHENTICATION


class SISConnectivityError(SISError):
    """DNS or connection-refused failures."""
    category = SISErrorCategory.CONNECTIVITY


class TransientRemoteError(SISError):
    """Remote failure that is expected to clear on retry."""
    category = SISErrorCategory.PROVIDER_ERROR


class SISTimeoutError(TransientRemoteError):
    category = SISErrorCategory.TIMEOUT


class SISRateLimitError(TransientRemoteError):
    """Rate limiting errors."""
    category = SISErrorCategory.RATE_LIMITING

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.details['retry_after'] = retry_after


class SISServerError(TransientRemoteError):
    pass


class RecordValidationError(SISError):
    """A single raw record cannot be turned into a local attendance record."""
    category = SISErrorCategory.DATA_VALIDATION

    def __init__(self, message: str, record_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.record_key = record_key


class SISTransportError(SISError):
    """
    Raw failure of a remote call: a non-2xx response or a transport exception.

    The source raises it untriaged; the classifier decides its severity.
    """
    category = SISErrorCategory.TRANSPORT

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.status = status
        self.retry_after = retry_after
        self.details.update({'status': status, 'retry_after': retry_after})


class ClassifiedSyncError(SISError):
    """An error whose severity has already been decided."""

    def __init__(
        self,
        kind: SyncErrorKind,
        cause: BaseException,
        attempts: int = 1,
        stage: Optional[str] = None,
        message: Optional[str] = None
    ):
        super().__init__(message or str(cause) or type(cause).__name__, original_exception=cause)
        self.kind = kind
        self.cause = cause
        self.attempts = attempts
        self.stage = stage
        self.category = getattr(cause, 'category', SISErrorCategory.UNKNOWN)

    @property
    def exhausted(self) -> bool:
        return False


class FatalSyncError(ClassifiedSyncError):
    def __init__(self, cause: BaseException, attempts: int = 1, stage: Optional[str] = None):
        super().__init__(SyncErrorKind.FATAL, cause, attempts=attempts, stage=stage)


class RetryExhaustedError(ClassifiedSyncError):
    def __init__(self, cause: BaseException, attempts: int, stage: Optional[str] = None):
        super().__init__(
            SyncErrorKind.RECOVERABLE, cause, attempts=attempts, stage=stage,
            message=f"retries exhausted after {attempts} attempts: {cause}"
        )

    @property
    def exhausted(self) -> bool:
        return True


FATAL_HTTP_STATUSES = frozenset({401, 403, 407})
RECOVERABLE_HTTP_STATUSES = frozenset({408, 425, 429})


def iter_error_chain(error: BaseException, max_depth: int = 8) -> Iterator[BaseException]:
    """Yield the error followed by its causes, os_error and wrapped originals."""
    seen = set()
    pending = [error]
    while pending and len(seen) < max_depth:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for attr in ('original_exception', 'os_error', '__cause__', '__context__'):
            nested = getattr(current, attr, None)
            if isinstance(nested, BaseException):
                pending.append(nested)


class ErrorClassifier:
    """
    Label a failure FATAL or RECOVERABLE.

    Rules are checked in order: fatal conditions (authentication,
    authorization, malformed credentials, configuration, DNS, refused
    connections, TLS certificates), then recoverable conditions (timeouts,
    rate limits, server errors, dropped connections, record validation,
    database errors). Anything else is RECOVERABLE with a warning.
    """

    def classify(self, error: BaseException) -> SyncErrorKind:
        if isinstance(error, ClassifiedSyncError):
            return error.kind
        if self._is_fatal(error):
            return SyncErrorKind.FATAL
        if self._is_recoverable(error):
            return SyncErrorKind.RECOVERABLE

        sis_logger.warning(
            f"Unclassified error treated as recoverable: {type(error).__name__}: {error}"
        )
        return SyncErrorKind.RECOVERABLE

    def _is_fatal(self, error: BaseException) -> bool:
        for exc in iter_error_chain(error):
            if isinstance(exc, (ConfigurationError, SISAuthenticationError, SISConnectivityError)):
                return True
            if isinstance(exc, SISTransportError) and exc.status in FATAL_HTTP_STATUSES:
                return True
            if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError, ssl.CertificateError)):
                return True
            if isinstance(exc, (socket.gaierror, ConnectionRefusedError, aiohttp.InvalidURL)):
                return True
        return False

    def _is_recoverable(self, error: BaseException) -> bool:
        for exc in iter_error_chain(error):
            if isinstance(exc, (TransientRemoteError, RecordValidationError)):
                return True
            if isinstance(exc, SISTransportError) and exc.status is not None:
                if exc.status in RECOVERABLE_HTTP_STATUSES or exc.status >= 500:
                    return True
            if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
                return True
            if isinstance(exc, (aiohttp.ServerDisconnectedError, aiohttp.ClientPayloadError,
                                aiohttp.ClientOSError, ConnectionResetError)):
                return True
            if isinstance(exc, SQLAlchemyError):
                return True
        return False


@dataclass(frozen=True)
class ClassifiedError:
    """One failure of a run with the context needed to replay it."""
    kind: SyncErrorKind
    stage: str
    message: str
    error_type: str
    school_code: Optional[str] = None
    chunk: Optional[str] = None
    batch_index: Optional[int] = None
    record_key: Optional[str] = None
    attempts: int = 1
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'stage': self.stage,
            'message': self.message,
            'error_type': self.error_type,
            'school_code': self.school_code,
            'chunk': self.chunk,
            'batch_index': self.batch_index,
            'record_key': self.record_key,
            'attempts': self.attempts,
            'timestamp': self.timestamp.isoformat(),
        }


class ErrorCollector:
    """In-memory error log of one sync operation."""

    def __init__(self):
        self._errors: List[ClassifiedError] = []
        self.fatal: Optional[ClassifiedError] = None

    @property
    def errors(self) -> List[ClassifiedError]:
        return list(self._errors)

    def record(
        self,
        error: BaseException,
        kind: SyncErrorKind,
        stage: str,
        **context
    ) -> ClassifiedError:
        """
        Append a classified error and log it.

        Args:
            error: The failure (a ClassifiedSyncError is unwrapped to its cause)
            kind: Severity decided by the classifier
            stage: Pipeline stage that failed (fetch, transform, write, ...)
            **context: school_code, chunk, batch_index, record_key
        """
        attempts = 1
        cause = error
        if isinstance(error, ClassifiedSyncError):
            attempts = error.attempts
            cause = error.cause

        message = getattr(error, 'message', None) or str(error) or type(cause).__name__
        entry = ClassifiedError(
            kind=kind,
            stage=stage,
            message=message,
            error_type=type(cause).__name__,
            attempts=attempts,
            **context
        )
        self._errors.append(entry)
        if kind is SyncErrorKind.FATAL and self.fatal is None:
            self.fatal = entry

        log_message = f"Sync error [{kind.value}] during {stage}: {message}"
        if kind is SyncErrorKind.FATAL:
            sis_logger.error(log_message, extra={'sync_error': entry.to_dict()})
        else:
            sis_logger.warning(log_message, extra={'sync_error': entry.to_dict()})
        return entry

    def breakdown_by_kind(self) -> Dict[str, int]:
        return dict(Counter(e.kind.value for e in self._errors))

    def breakdown_by_type(self) -> Dict[str, int]:
        return dict(Counter(f"{e.stage}:{e.error_type}" for e in self._errors))

    def __len__(self) -> int:
        return len(self._errors)
