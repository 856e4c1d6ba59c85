# songjobs/errors.py
"""
Provider error taxonomy and mapper.

Every provider failure (HTTP status, envelope error code, transport timeout,
response without a job id) is normalized into a ProviderErrorInfo whose
`type` is one of ErrorType and which carries a retryability flag.
"""

from enum import Enum
from typing import Any, Optional

import httpx

from songjobs.schemas import ProviderErrorInfo


class ErrorType(str, Enum):
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    BAD_API_KEY = "BAD_API_KEY"
    FORBIDDEN = "FORBIDDEN"
    BAD_REQUEST = "BAD_REQUEST"
    TIMEOUT = "TIMEOUT"
    NO_JOB_ID = "NO_JOB_ID"
    GEN_ERROR = "GEN_ERROR"


RETRYABLE = {
    ErrorType.INSUFFICIENT_CREDITS: True,
    ErrorType.BAD_API_KEY: False,
    ErrorType.FORBIDDEN: False,
    ErrorType.BAD_REQUEST: False,
    ErrorType.TIMEOUT: True,
    ErrorType.NO_JOB_ID: True,
    ErrorType.GEN_ERROR: True,
}


class ProviderCallError(Exception):
    """Raised by providers for any failed upstream call.

    status: HTTP status of the upstream response, if any
    code:   provider envelope code (SunoAPI returns {"code": 429, ...} with HTTP 200)
    kind:   pre-classified ErrorType when the provider already knows it (e.g. NO_JOB_ID)
    raw:    decoded upstream body, kept for diagnostics only
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Any = None,
                 kind: Optional[ErrorType] = None, raw: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.kind = kind
        self.raw = raw


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def classify(code: Optional[int], kind: Optional[ErrorType] = None) -> ErrorType:
    if code == 429:
        return ErrorType.INSUFFICIENT_CREDITS
    if code == 401:
        return ErrorType.BAD_API_KEY
    if code == 403:
        return ErrorType.FORBIDDEN
    if code in (400, 422):
        return ErrorType.BAD_REQUEST
    if code in (408, 504):
        return ErrorType.TIMEOUT
    if kind is not None:
        return ErrorType(kind)
    return ErrorType.GEN_ERROR


def _message_for(etype: ErrorType, fallback: str) -> str:
    if etype == ErrorType.BAD_API_KEY:
        return "Invalid or missing API key"
    if etype == ErrorType.FORBIDDEN:
        return "Account does not have access"
    if etype == ErrorType.TIMEOUT:
        return "Provider timed out"
    if etype == ErrorType.NO_JOB_ID:
        return "Provider did not return a job id"
    return fallback or "Unknown error"


def map_provider_error(exc: BaseException) -> ProviderErrorInfo:
    """Map any exception raised around a provider call to a ProviderErrorInfo."""
    if isinstance(exc, ProviderCallError):
        code = _as_int(exc.code)
        if code is None or code == 200:
            code = exc.status
        etype = classify(code, exc.kind)
        return ProviderErrorInfo(
            type=etype.value,
            message=_message_for(etype, exc.message),
            status=exc.status,
            code=exc.code,
            raw=exc.raw,
            retryable=RETRYABLE[etype],
        )
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        etype = ErrorType.TIMEOUT
        return ProviderErrorInfo(type=etype.value, message=_message_for(etype, str(exc)),
                                 retryable=RETRYABLE[etype])
    etype = ErrorType.GEN_ERROR
    return ProviderErrorInfo(type=etype.value, message=str(exc) or exc.__class__.__name__,
                             retryable=RETRYABLE[etype])
