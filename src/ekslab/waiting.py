"""
Poll-until-condition and retry helpers with bounded exponential backoff.

Both are thin wrappers around `tenacity.Retrying`. Every wait is bounded by a
timeout and may be cancelled through a `threading.Event`. The sleep and clock
functions are injectable so callers (and tests) can drive them without real
delays.
"""

from __future__ import annotations

import dataclasses
import threading
import time
import typing

import tenacity
from botocore.exceptions import ClientError

import ekslab.errors

T = typing.TypeVar("T")


@dataclasses.dataclass(frozen=True)
class Backoff:
    timeout: float = 900.0
    initial_delay: float = 5.0
    max_delay: float = 60.0
    factor: float = 2.0
    # fraction of initial_delay added at random to each delay
    jitter: float = 0.0
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            msg = "timeout must be > 0"
            raise ValueError(msg)
        if self.initial_delay <= 0:
            msg = "initial_delay must be > 0"
            raise ValueError(msg)
        if self.factor < 1:
            msg = "factor must be >= 1"
            raise ValueError(msg)
        if not 0 <= self.jitter <= 1:
            msg = "jitter must be between 0 and 1"
            raise ValueError(msg)

    def wait_strategy(self) -> typing.Callable[[tenacity.RetryCallState], float]:
        strategy = tenacity.wait_exponential(
            multiplier=self.initial_delay,
            exp_base=self.factor,
            max=max(self.max_delay, self.initial_delay),
        )
        if self.jitter:
            strategy = strategy + tenacity.wait_random(0, self.initial_delay * self.jitter)
        return strategy


@dataclasses.dataclass
class Waiter:
    backoff: Backoff = dataclasses.field(default_factory=Backoff)
    cancel: threading.Event | None = None
    sleep: typing.Callable[[float], None] = time.sleep
    clock: typing.Callable[[], float] = time.monotonic

    def _pause(self, seconds: float) -> None:
        if self.cancel is None:
            self.sleep(seconds)
            return

        if self.cancel.wait(seconds):
            msg = "wait cancelled"
            raise ekslab.errors.WaitCancelled(msg)

    def _check_cancelled(self, retry_state: tenacity.RetryCallState) -> None:
        if self.cancel is not None and self.cancel.is_set():
            msg = "wait cancelled"
            raise ekslab.errors.WaitCancelled(msg)

    def _retrying(
        self,
        retry: typing.Callable[[tenacity.RetryCallState], bool],
        before_sleep: typing.Callable[[tenacity.RetryCallState], None] | None,
    ) -> tuple[tenacity.Retrying, float]:
        # tenacity's own stop_after_delay reads time.monotonic, not our clock
        started = self.clock()
        strategy = self.backoff.wait_strategy()

        def elapsed() -> float:
            return self.clock() - started

        def out_of_time(retry_state: tenacity.RetryCallState) -> bool:
            return elapsed() >= self.backoff.timeout

        def capped_wait(retry_state: tenacity.RetryCallState) -> float:
            return max(min(strategy(retry_state), self.backoff.timeout - elapsed()), 0.0)

        stops: list[typing.Callable[[tenacity.RetryCallState], bool]] = [out_of_time]
        if self.backoff.max_attempts is not None:
            stops.append(tenacity.stop_after_attempt(self.backoff.max_attempts))

        retrying = tenacity.Retrying(
            sleep=self._pause,
            stop=tenacity.stop_any(*stops),
            wait=capped_wait,
            retry=retry,
            before=self._check_cancelled,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying, started

    def until(
        self,
        condition: typing.Callable[[], T | None],
        description: str,
        on_wait: typing.Callable[[int, float], None] | None = None,
    ) -> T:
        """
        Call `condition` until it returns something truthy and return that value.

        Raises `WaitTimeout` when the backoff's timeout or attempt budget is spent
        and `WaitCancelled` when the cancel event is set. Exceptions raised by
        `condition` propagate unchanged.
        """
        before_sleep = None
        if on_wait is not None:

            def before_sleep(retry_state: tenacity.RetryCallState) -> None:
                on_wait(retry_state.attempt_number, retry_state.next_action.sleep)

        retrying, started = self._retrying(tenacity.retry_if_result(lambda result: not result), before_sleep)
        try:
            return retrying(condition)
        except tenacity.RetryError as e:
            raise ekslab.errors.WaitTimeout(
                description, self.clock() - started, e.last_attempt.attempt_number
            ) from None

    def call(
        self,
        func: typing.Callable[[], T],
        description: str,
        policies: typing.Mapping[ekslab.errors.ErrorKind, ekslab.errors.Policy],
        on_retry: typing.Callable[[int, ClientError, float], None] | None = None,
    ) -> T:
        """
        Call `func`, retrying provider errors whose policy is RETRY.

        Any other provider error propagates unchanged so the caller can apply
        IGNORE or ESCALATE itself. When the retry budget runs out the last
        provider error is re-raised.
        """

        def retryable(exc: BaseException) -> bool:
            return (
                isinstance(exc, ClientError)
                and ekslab.errors.policy_for(exc, policies) is ekslab.errors.Policy.RETRY
            )

        before_sleep = None
        if on_retry is not None:

            def before_sleep(retry_state: tenacity.RetryCallState) -> None:
                on_retry(retry_state.attempt_number, retry_state.outcome.exception(), retry_state.next_action.sleep)

        retrying, _ = self._retrying(tenacity.retry_if_exception(retryable), before_sleep)
        return retrying(func)
