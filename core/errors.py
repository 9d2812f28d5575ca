"""
Error classification for pipeline steps.
Maps a raised failure to 'retryable' (transient provider/network trouble)
or 'permanent' (bad input, no data, quota exhausted). Unknown errors are
permanent so a run never retries forever on something nobody recognised.
"""
import asyncio
from datetime import datetime, timezone
from typing import Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

RETRYABLE = "retryable"
PERMANENT = "permanent"

# Provider status codes (DataForSEO-style, 5 digits)
STATUS_SUCCESS = 20000
STATUS_PAYMENT_REQUIRED = 40200
STATUS_RATE_LIMIT = 40202
STATUS_AUTH_ERROR = 40100
STATUS_NOT_FOUND = 40400
STATUS_INVALID_REQUEST = 40001
STATUS_INTERNAL_ERROR = 50000

RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "429")
QUOTA_PATTERNS = ("payment", "quota", "balance", "insufficient", "402")
AUTH_PATTERNS = ("unauthorized", "authentication", "invalid credentials", "401")
INVALID_INPUT_PATTERNS = ("invalid", "malformed", "bad request", "not found", "does not exist")
NETWORK_PATTERNS = ("timeout", "timed out", "network", "connection reset",
                    "connection refused", "econnreset", "econnrefused", "socket")
SERVER_PATTERNS = ("500", "502", "503", "504", "internal server", "service unavailable")


class ProviderError(Exception):
    """Error returned by an external data provider."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 http_status: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.http_status = http_status


class TaskTimeoutError(TimeoutError):
    """An asynchronous provider task did not become ready in time."""


class ClassifiedError(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    message: str
    error_type: str
    code: Optional[int] = None
    http_status: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def retryable(self) -> bool:
        return self.category == RETRYABLE

    def summary(self) -> dict:
        """JSON-friendly form stored in run warnings."""
        return {
            "message": self.message,
            "category": self.category,
            "error_type": self.error_type,
            "code": self.code,
            "http_status": self.http_status,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }


def _category_for_http_status(http_status: int) -> Optional[str]:
    if http_status == 429 or http_status >= 500:
        return RETRYABLE
    if 400 <= http_status < 500:
        return PERMANENT
    return None


def _category_for_status_code(status_code: int) -> Optional[str]:
    if status_code == STATUS_RATE_LIMIT:
        return RETRYABLE
    # payment (40200), auth (40100), invalid request (400xx), not found (40400)
    if 40000 <= status_code < 50000:
        return PERMANENT
    if status_code >= STATUS_INTERNAL_ERROR:
        return RETRYABLE
    return None


def _category_for_message(message: str) -> Optional[str]:
    text = message.lower()
    if any(p in text for p in RATE_LIMIT_PATTERNS):
        return RETRYABLE
    if any(p in text for p in QUOTA_PATTERNS):
        return PERMANENT
    if any(p in text for p in AUTH_PATTERNS):
        return PERMANENT
    if any(p in text for p in INVALID_INPUT_PATTERNS):
        return PERMANENT
    if any(p in text for p in NETWORK_PATTERNS):
        return RETRYABLE
    if any(p in text for p in SERVER_PATTERNS):
        return RETRYABLE
    return None


def _error_message(error: BaseException) -> str:
    message = str(error)
    if not message:
        message = type(error).__name__
    return message


def classify(error: BaseException) -> ClassifiedError:
    """Classify a raised error. Pure mapping, no side effects."""
    message = _error_message(error)
    code = getattr(error, "status_code", None)
    http_status = getattr(error, "http_status", None)

    if isinstance(error, requests.HTTPError) and error.response is not None:
        http_status = error.response.status_code

    category = None

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError,
                          requests.ConnectionError, requests.Timeout)):
        category = RETRYABLE
    elif http_status is not None:
        category = _category_for_http_status(http_status)

    if category is None and isinstance(code, int):
        category = _category_for_status_code(code)

    if category is None and isinstance(error, (ValueError, LookupError)):
        category = PERMANENT

    if category is None:
        category = _category_for_message(message)

    if category is None:
        category = PERMANENT

    return ClassifiedError(
        category=category,
        message=message,
        error_type=type(error).__name__,
        code=code if isinstance(code, int) else None,
        http_status=http_status,
    )
