"""
Failure taxonomy for the request pipeline.

Every failure the processor sees is reduced to an ErrorKind. The kind decides
the `retriable` flag on the emitted error event and, when kind-aware retry is
switched on, whether the queue tries the job again.
"""
import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    CLIENT_ERROR = "CLIENT_ERROR"
    MODEL_NOT_ALLOWED = "MODEL_NOT_ALLOWED"
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    CONTEXT_NOT_FOUND = "CONTEXT_NOT_FOUND"
    UNKNOWN = "UNKNOWN"

    @property
    def retriable(self) -> bool:
        return self in _RETRIABLE_KINDS


_RETRIABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.SERVER_ERROR, ErrorKind.RATE_LIMIT})


class PipelineError(Exception):
    """Base error raised inside the pipeline with a fixed kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def retriable(self) -> bool:
        return self.kind.retriable

    @property
    def code(self) -> str:
        return self.kind.value


class ContextNotFoundError(PipelineError):
    kind = ErrorKind.CONTEXT_NOT_FOUND


class ModelNotAllowedError(PipelineError):
    kind = ErrorKind.MODEL_NOT_ALLOWED


class CredentialMissingError(PipelineError):
    kind = ErrorKind.CREDENTIAL_MISSING


class ProviderError(PipelineError):
    """Upstream provider failure; kind comes from the HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, kind=_kind_for_status(status_code))


class JobNotFound(Exception):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID {job_id} not found")


def _kind_for_status(status: Optional[int]) -> ErrorKind:
    if status is None:
        return ErrorKind.UNKNOWN
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status == 408:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    if status >= 400:
        return ErrorKind.CLIENT_ERROR
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto the taxonomy."""
    if isinstance(exc, PipelineError):
        return exc.kind

    # openai SDK / httpx style; checked before the timeout check since
    # the SDK's timeout error carries no status
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        return _kind_for_status(status)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT

    name = type(exc).__name__.lower()
    if "timeout" in name:
        return ErrorKind.TIMEOUT
    if "ratelimit" in name:
        return ErrorKind.RATE_LIMIT
    # Circuit open, dropped connections: the upstream is unhealthy
    if isinstance(exc, ConnectionError) or "connection" in name or "circuitopen" in name:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.message
    return str(exc) or type(exc).__name__
