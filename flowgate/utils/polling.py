"""Bounded polling primitive shared by queue resolution and build waiting."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..constants import DEFAULT_JOB_TIMEOUT, DEFAULT_POLL_INTERVAL
from ..errors import PollCancelledError, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Probe = Callable[[], Awaitable[T]]
Sleeper = Callable[[float, Optional[asyncio.Event]], Awaitable[bool]]


class PollState(str, Enum):
    WAITING = "WAITING"
    SATISFIED = "SATISFIED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


async def sleep_or_cancel(delay: float, cancel: Optional[asyncio.Event] = None) -> bool:
    """Suspend for ``delay`` seconds, waking early if ``cancel`` is set.

    Returns ``True`` when the wait ended because of cancellation.
    """
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class BoundedPoller:
    """Evaluate a probe at a fixed interval until a predicate holds.

    The deadline is measured from the start of :meth:`poll`, not from each
    probe. Exceptions listed in ``transient``, or accepted by ``retry_if``, are
    logged and polling goes on; any other exception raised by the probe ends
    the poll immediately.
    """

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_JOB_TIMEOUT,
        *,
        transient: Tuple[Type[BaseException], ...] = (),
        retry_if: Optional[Callable[[BaseException], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper = sleep_or_cancel,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self.interval = interval
        self.timeout = timeout
        self._transient = transient
        self._retry_if = retry_if
        self._clock = clock
        self._sleep = sleep

    async def poll(
        self,
        probe: Probe[T],
        predicate: Callable[[T], bool],
        *,
        description: str = "condition",
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> T:
        """Return the first probe value satisfying ``predicate``.

        Raises:
            PollTimeoutError: the deadline passed first; carries the last value.
            PollCancelledError: ``cancel`` was set first.
        """
        limit = self.timeout if timeout is None else timeout
        started = self._clock()
        deadline = started + limit
        state = PollState.WAITING
        last: Any = None
        attempts = 0

        while state is PollState.WAITING:
            if cancel is not None and cancel.is_set():
                state = PollState.CANCELLED
                break

            attempts += 1
            try:
                value = await probe()
            except Exception as exc:
                if not self.is_transient(exc):
                    raise
                logger.warning(
                    f"Transient failure polling {description} (attempt {attempts}): {exc}"
                )
            else:
                last = value
                if predicate(value):
                    state = PollState.SATISFIED
                    break
                logger.debug(f"Polling {description}: attempt {attempts} not satisfied")

            remaining = deadline - self._clock()
            if remaining <= 0:
                state = PollState.TIMED_OUT
                break
            if await self._sleep(min(self.interval, remaining), cancel):
                state = PollState.CANCELLED

        elapsed = self._clock() - started
        if state is PollState.SATISFIED:
            return last
        if state is PollState.TIMED_OUT:
            raise PollTimeoutError(description, limit, elapsed, last_value=last)
        raise PollCancelledError(description, last_value=last)

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, self._transient):
            return True
        return self._retry_if is not None and self._retry_if(exc)
