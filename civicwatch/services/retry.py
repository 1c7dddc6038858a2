from __future__ import annotations

from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_incrementing,
)
from tenacity.wait import wait_base

log = structlog.get_logger(__name__)

T = TypeVar("T")


def linear_backoff(unit: float) -> wait_base:
    """Wait 1x unit before the first retry, 2x before the second, and so on."""
    return wait_incrementing(start=unit, increment=unit)


def _log_retry(label: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.info(
            "retry.scheduled",
            target=label,
            attempt=state.attempt_number,
            sleep=round(state.next_action.sleep, 3) if state.next_action else 0,
            error=str(exc),
        )
    return _before_sleep


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    wait: wait_base,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """
    Await ``fn`` up to ``attempts`` times, sleeping per ``wait`` in between.
    The last exception propagates unchanged.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait,
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry(label),
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover
