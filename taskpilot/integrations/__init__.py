"""
HTTP collaborators: execution server, callbacks, GitHub, backlog.

All outbound calls share one retry policy: bounded attempts with
exponential backoff, retrying only transient failures (transport
errors, timeouts, 429 and 5xx responses).
"""

from __future__ import annotations

import httpx
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from taskpilot.config_loader import RetryConfig


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        f"[HTTP] Attempt {state.attempt_number} failed ({exc}), "
        f"retrying in {state.next_action.sleep if state.next_action else 0:.1f}s"
    )


def build_retrying(config: RetryConfig | None = None) -> Retrying:
    config = config or RetryConfig()
    return Retrying(
        stop=stop_after_attempt(max(1, config.attempts)),
        wait=wait_exponential(multiplier=config.initial_delay, max=config.max_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )
