"""Reconnection backoff.

The wait between reconnect attempts depends on what kind of failure caused
the reconnect, following the streaming API reconnection guidelines:

* TCP/IP level failures back off linearly, 250ms at a time, up to 16 seconds.
* HTTP 420/429 (rate limited) start at one minute and double each attempt.
* Other retryable HTTP failures start at 5 seconds and double, up to 320 seconds.
* DNS failures start at one second and double, up to 8 seconds.

Anything else is never retried. Consecutive failures of the same class grow
the wait; a failure of a different class starts a new run.
"""

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

import anyio
from pydantic import BaseModel, ConfigDict, Field

from ndstream.shared.deadline import Deadline
from ndstream.shared.exceptions import StreamError
from ndstream.types import (
    HTTP_BAD_GATEWAY,
    HTTP_ENHANCE_YOUR_CALM,
    HTTP_ERROR,
    HTTP_FORBIDDEN,
    HTTP_GATEWAY_TIMEOUT,
    HTTP_IM_A_TEAPOT,
    HTTP_INTERNAL_SERVER_ERROR,
    HTTP_NOT_FOUND,
    HTTP_NOT_IMPLEMENTED,
    HTTP_REQUEST_TIMEOUT,
    HTTP_SERVICE_UNAVAILABLE,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
    ErrorKind,
)

logger = logging.getLogger(__name__)

ERROR_CONNECT_RETRY_TOP = "maximum backoff time reached"
ERROR_CONNECT_RETRY = "connection error, waiting for reconnect"

SleepFn = Callable[[float], Awaitable[None]]


class BackoffClass(str, Enum):
    TCP = "tcp"
    HTTP_RATE_LIMITED = "http_rate_limited"
    HTTP = "http"
    DNS = "dns"
    NON_RETRYABLE = "non_retryable"


class BackoffPolicy(BaseModel):
    """Wait growth and retry ceiling for one backoff class. Times are in milliseconds."""

    initial_wait: int = Field(gt=0)
    exponential: bool = True
    """Double the previous wait when True, otherwise add ``initial_wait``."""

    max_retries: int = Field(ge=0)
    max_wait: int | None = None

    model_config = ConfigDict(frozen=True)

    def next_wait(self, last_wait: int) -> int:
        if self.exponential:
            return last_wait * 2
        return last_wait + self.initial_wait


DEFAULT_POLICIES: Mapping[BackoffClass, BackoffPolicy] = {
    BackoffClass.TCP: BackoffPolicy(initial_wait=250, exponential=False, max_retries=64, max_wait=16000),
    BackoffClass.HTTP_RATE_LIMITED: BackoffPolicy(initial_wait=60000, max_retries=5),
    BackoffClass.HTTP: BackoffPolicy(initial_wait=5000, max_retries=7, max_wait=320000),
    BackoffClass.DNS: BackoffPolicy(initial_wait=1000, max_retries=8, max_wait=8000),
}

RATE_LIMITED_STATUSES = frozenset({HTTP_ENHANCE_YOUR_CALM, HTTP_TOO_MANY_REQUESTS})

RETRYABLE_HTTP_STATUSES = frozenset(
    {
        HTTP_ERROR,
        HTTP_UNAUTHORIZED,
        HTTP_FORBIDDEN,
        HTTP_NOT_FOUND,
        HTTP_REQUEST_TIMEOUT,
        HTTP_IM_A_TEAPOT,
        HTTP_INTERNAL_SERVER_ERROR,
        HTTP_NOT_IMPLEMENTED,
        HTTP_BAD_GATEWAY,
        HTTP_SERVICE_UNAVAILABLE,
        HTTP_GATEWAY_TIMEOUT,
    }
)


def classify(error: StreamError) -> BackoffClass:
    """Map a failure onto the backoff class that governs its retries."""
    match error.kind:
        case ErrorKind.TCP:
            return BackoffClass.TCP
        case ErrorKind.DNS:
            return BackoffClass.DNS
        case ErrorKind.HTTP if error.code in RATE_LIMITED_STATUSES:
            return BackoffClass.HTTP_RATE_LIMITED
        case ErrorKind.HTTP if error.code in RETRYABLE_HTTP_STATUSES:
            return BackoffClass.HTTP
        case ErrorKind.SOCKET_EOF | ErrorKind.SOCKET_TIMEOUT | ErrorKind.SOCKET_ERROR:
            # The stream broke during the handshake; retry it like a dial failure.
            return BackoffClass.TCP
        case _:
            return BackoffClass.NON_RETRYABLE


@dataclass
class BackoffState:
    backoff_class: BackoffClass | None = None
    attempts: int = 0
    last_wait: int = 0

    def reset(self) -> None:
        self.backoff_class = None
        self.attempts = 0
        self.last_wait = 0


class BackoffController:
    """Decides how long to wait before the next reconnect, and when to give up."""

    def __init__(
        self,
        deadline: Deadline | None = None,
        policies: Mapping[BackoffClass, BackoffPolicy] | None = None,
        sleep: SleepFn = anyio.sleep,
    ) -> None:
        self.deadline = deadline or Deadline()
        self.policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self.state = BackoffState()
        self._sleep = sleep

    def reset(self) -> None:
        self.state.reset()

    def next_wait(self, error: StreamError) -> int:
        """Advance the backoff state for ``error`` and return the wait in milliseconds.

        Raises:
            StreamError: ``error`` itself when it is not retryable,
                RETRY_EXHAUSTED when the class's retry ceiling is exceeded, and
                DEADLINE_EXCEEDED when the wait would reach the session deadline.
        """
        backoff_class = classify(error)
        policy = self.policies.get(backoff_class)
        if policy is None:
            raise error

        state = self.state
        if state.backoff_class == backoff_class:
            state.attempts += 1
            wait = policy.next_wait(state.last_wait)
            if state.attempts > policy.max_retries:
                logger.error(f"Giving up after {policy.max_retries} {backoff_class.value} retries: {error}")
                state.reset()
                raise StreamError.retry_exhausted(error) from error
        else:
            state.backoff_class = backoff_class
            state.attempts = 1
            wait = policy.initial_wait

        if policy.max_wait is not None and wait >= policy.max_wait:
            wait = policy.max_wait
            logger.warning(f"{ERROR_CONNECT_RETRY_TOP}: {error.code} : {error.message}")

        remaining = self.deadline.remaining()
        if remaining is not None and wait / 1000 >= remaining:
            logger.debug(f"Backoff of {wait}ms would pass the deadline")
            raise StreamError.deadline_exceeded() from error

        state.last_wait = wait
        return wait

    async def backoff(self, error: StreamError) -> int:
        """Wait before the next reconnect attempt; returns the wait in milliseconds."""
        wait = self.next_wait(error)
        logger.warning(
            f"{ERROR_CONNECT_RETRY}: {error.kind.value} {error.code} : {error.message} "
            f"(attempt {self.state.attempts}, waiting {wait}ms)"
        )
        await self._sleep(wait / 1000)
        return wait
