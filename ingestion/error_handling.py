"""
Failure classification for the ingestion and retrieval pipeline.

Typed exceptions (timeouts, aiohttp, SQLAlchemy, provider status codes) are
classified first; anything else falls through to an ordered table of message
keywords. The first matching rule wins.
"""

import asyncio
from enum import Enum
from typing import NamedTuple, Optional, Tuple

import aiohttp
from sqlalchemy.exc import SQLAlchemyError


class ErrorType(str, Enum):
    VALIDATION = "validation_error"
    NETWORK = "network_error"
    DATABASE = "database_error"
    EXTERNAL_API = "external_api_error"
    TIMEOUT = "timeout_error"
    UNKNOWN = "unknown_error"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class MessageRule(NamedTuple):
    error_type: ErrorType
    severity: Severity
    retryable: bool
    keywords: Tuple[str, ...]


RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

MESSAGE_RULES: Tuple[MessageRule, ...] = (
    MessageRule(ErrorType.TIMEOUT, Severity.WARNING, True, ("timeout", "timed out", "deadline")),
    MessageRule(ErrorType.NETWORK, Severity.WARNING, True, ("connection", "network", "dns", "socket")),
    MessageRule(ErrorType.DATABASE, Severity.CRITICAL, True, ("database", "sqlalchemy", "deadlock")),
    MessageRule(ErrorType.EXTERNAL_API, Severity.WARNING, True,
                ("rate limit", "quota", "service unavailable", "429", "503")),
    MessageRule(ErrorType.VALIDATION, Severity.INFO, False,
                ("validation", "invalid", "empty", "missing required", "dimension")),
)


def is_retryable_status(status: Optional[int]) -> bool:
    """Rate limits and server-side failures; 4xx input errors are final"""
    return status is not None and status in RETRYABLE_STATUSES


def classify_error(error: Exception) -> Tuple[ErrorType, Severity, bool]:
    """
    Classify a pipeline failure.

    Returns:
        (error_type, severity, is_retryable)
    """
    if isinstance(error, asyncio.TimeoutError):
        return ErrorType.TIMEOUT, Severity.WARNING, True
    if isinstance(error, aiohttp.ClientError):
        return ErrorType.NETWORK, Severity.WARNING, True
    if isinstance(error, SQLAlchemyError):
        return ErrorType.DATABASE, Severity.CRITICAL, True

    status = getattr(error, 'status', None)
    if isinstance(status, int):
        return ErrorType.EXTERNAL_API, Severity.WARNING, is_retryable_status(status)

    message = str(error).lower()
    for rule in MESSAGE_RULES:
        if any(keyword in message for keyword in rule.keywords):
            return rule.error_type, rule.severity, rule.retryable

    return ErrorType.UNKNOWN, Severity.WARNING, False
