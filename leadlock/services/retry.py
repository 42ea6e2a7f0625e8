from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger("leadlock")

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503})


def status_code_of(exc: BaseException) -> Optional[int]:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(getattr(exc, "resp", None), "status", None),
    ):
        try:
            if candidate is not None:
                return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def is_retryable(exc: BaseException) -> bool:
    code = status_code_of(exc)
    if code is not None:
        return code in RETRYABLE_STATUS_CODES
    # Clients that only carry the status in their message text.
    message = str(exc)
    return any(str(code) in message for code in RETRYABLE_STATUS_CODES)


def with_retry(
    operation: Callable[[], T],
    *,
    tries: int = 5,
    base_delay_seconds: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with exponential backoff.

    Delays are ``base_delay_seconds * 2**attempt``. Non-transient failures and
    the last transient failure propagate unchanged.
    """
    attempts = max(1, tries)
    for attempt in range(attempts):
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt == attempts - 1:
                raise
            delay = base_delay_seconds * (2**attempt)
            logger.warning(
                "rpc_retry attempt=%s delay_s=%.2f error=%s", attempt + 1, delay, exc
            )
            sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover
