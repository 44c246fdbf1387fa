"""
Utility functions for key handling, string sanitization and retries.

This module provides helper functions for:
- Sanitizing user-provided file names for use inside storage keys
- Validating storage references and deriving the input kind
- Classifying AWS errors and retrying calls that fail transiently
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, TypeVar

from .errors import TransientInfrastructureError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Pattern to match characters that are not safe inside storage keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

UNKNOWN_INPUT_KIND = "unknown"

# AWS error codes worth retrying; any 5xx is retried as well
TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestThrottled",
    "SlowDown",
    "RequestTimeout",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "InternalError",
    "AWS.SimpleQueueService.ServiceUnavailable",
}


def sanitize_filename(filename: str, fallback: str = "document") -> str:
    """
    Generate a key-safe file name from user input.

    Path components are dropped, unsafe runs of characters collapse to a
    single hyphen and the extension is preserved.

    Example:
        >>> sanitize_filename("My Receipt (1).PDF")
        "My-Receipt-1-.PDF"
        >>> sanitize_filename("../../etc/passwd")
        "passwd"
    """
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = SANITIZE_PATTERN.sub("-", name.strip())
    cleaned = cleaned.lstrip("-_.")
    return cleaned or fallback


def validate_input_ref(input_ref: str) -> str:
    """
    Check that a storage reference is usable as an object key.

    Raises:
        ValidationError: If the reference is blank, names a directory or
            contains relative path segments
    """
    ref = (input_ref or "").strip()
    if not ref:
        raise ValidationError("inputFileKey must not be empty")
    if ref.endswith("/"):
        raise ValidationError("inputFileKey must reference a file, not a prefix")
    if any(segment in ("", ".", "..") for segment in ref.split("/")):
        raise ValidationError("inputFileKey contains an invalid path segment")
    return ref


def derive_input_kind(input_ref: str) -> str:
    """
    Classify an input by the extension of its last path segment.

    Example:
        >>> derive_input_kind("uploads/abc-invoice.PDF")
        "pdf"
        >>> derive_input_kind("uploads/README")
        "unknown"
    """
    name = input_ref.rsplit("/", 1)[-1]
    stem, dot, suffix = name.rpartition(".")
    if not dot or not stem or not suffix:
        return UNKNOWN_INPUT_KIND
    return suffix.lower()


def is_transient_client_error(exc) -> bool:
    """Throttling and server-side failures of an AWS ``ClientError`` are worth retrying."""
    error = exc.response.get("Error", {})
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    return error.get("Code") in TRANSIENT_ERROR_CODES or status >= 500


def retry_transient(
    operation: Callable[[], T],
    attempts: int = 3,
    backoff: float = 0.5,
    description: str = "operation",
) -> T:
    """
    Call ``operation``, retrying on TransientInfrastructureError.

    Waits ``backoff * attempt`` seconds between tries. Any other exception
    propagates immediately.

    Raises:
        TransientInfrastructureError: The last error once attempts run out
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientInfrastructureError as exc:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {exc}")
                raise
            delay = backoff * attempt
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {exc}")
            time.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
