"""
Back-off for the external AI APIs (Gemini, ElevenLabs).

Errors are classified from their message: quota errors wait for the
server's retry hint (or a fixed pause), overload errors back off
exponentially. Both classes share one attempt budget; anything else is
raised on first failure.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Optional

from sermonclips.config import Settings

logger = logging.getLogger(__name__)


# Substrings (lowercased) that classify a transport error as retryable
QUOTA_MARKERS = ("429", "quota", "resource_exhausted")
OVERLOAD_MARKERS = ("overloaded", "503", "unavailable")

_RETRY_IN_RE = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_RE = re.compile(r"\"?retryDelay\"?\s*:\s*\"(\d+(?:\.\d+)?)s\"", re.IGNORECASE)


def classify_transport_error(message: str) -> Optional[str]:
    """Return "quota", "overload" or None (not retryable)."""
    lowered = message.lower()
    if any(marker in lowered for marker in QUOTA_MARKERS):
        return "quota"
    if any(marker in lowered for marker in OVERLOAD_MARKERS):
        return "overload"
    return None


def parse_retry_hint(message: str, retry_after: Optional[str] = None) -> Optional[float]:
    """Server-suggested wait in seconds, from a Retry-After header or the error text."""
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass

    for pattern in (_RETRY_IN_RE, _RETRY_DELAY_RE):
        match = pattern.search(message)
        if match:
            return float(match.group(1))
    return None


def retry_delay(kind: str, attempt: int, message: str, retry_after: Optional[str], settings: Settings) -> float:
    if kind == "quota":
        hint = parse_retry_hint(message, retry_after)
        return hint if hint is not None else settings.analysis_quota_backoff_seconds
    return min(
        settings.analysis_backoff_base_seconds * 2 ** (attempt - 1),
        settings.analysis_backoff_max_seconds,
    )


async def call_with_backoff(
    operation: str,
    call: Callable[[], Awaitable[Any]],
    retry_on: tuple[type[Exception], ...],
    settings: Settings,
    sleep: Callable[[float], Awaitable[None]],
) -> Any:
    """
    Run ``call`` until it succeeds, retrying ``retry_on`` errors that
    classify as quota or overload.

    The exception's optional ``retry_after`` attribute carries the
    Retry-After header.
    """
    max_attempts = max(1, settings.analysis_max_attempts)
    attempt = 1

    while True:
        try:
            return await call()
        except retry_on as e:
            message = str(e)
            kind = classify_transport_error(message)
            if kind is None or attempt >= max_attempts:
                raise

            delay = retry_delay(kind, attempt, message, getattr(e, "retry_after", None), settings)
            logger.warning(
                f"{operation} attempt {attempt}/{max_attempts} hit {kind} error, "
                f"retrying in {delay:.1f}s: {message[:200]}"
            )
            await sleep(delay)
            attempt += 1
