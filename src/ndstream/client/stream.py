"""The public read loop of the client.

Example usage:

    client = StreamClient(basic_credential("user", "secret"))
    client.set_deadline(time.time() + 60)
    async with client:
        async for record in client:
            print(record.screen_name, record.text)

Records should be handed off quickly: the server drops clients that do not
consume the stream fast enough.
"""

import logging
import random
import time
from collections.abc import Mapping
from types import TracebackType

import anyio
from pydantic import ValidationError

from ndstream.client.backoff import BackoffClass, BackoffController, BackoffPolicy, SleepFn
from ndstream.client.connection import ConnectionManager, Dialer, Resolver, dial, resolve_host
from ndstream.client.settings import StreamSettings
from ndstream.shared.deadline import Clock, Deadline
from ndstream.shared.exceptions import StreamError
from ndstream.types import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_ENDPOINT,
    DEFAULT_HOST,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_USER_AGENT,
    ErrorKind,
    Record,
    Session,
    StreamState,
    basic_credential,
)

logger = logging.getLogger(__name__)

ERROR_OUT_OF_RECORDS = "maximum record count reached"
ERROR_CREDENTIAL_MISSING = "missing credential"


def parse_record(line: bytes) -> Record | None:
    """Decode a line into a Record, or None when it is not a stream record.

    Keep-alives, status messages and malformed JSON all yield None.
    """
    line = line.strip()
    if not line.startswith(b"{"):
        return None
    try:
        return Record.model_validate_json(line)
    except ValidationError:
        logger.debug(f"Discarding non-record line: {line[:80]!r}")
        return None


class StreamClient:
    """Client for an endless stream of newline-delimited JSON records.

    ``next_record`` blocks until a record arrives and returns None once the
    record limit or the deadline is reached. Dropped or stalled connections are
    re-established automatically with backoff; a StreamError escapes only when
    the failure is not retryable, the retry ceiling is hit, or the deadline
    passes while reconnecting.
    """

    def __init__(
        self,
        credential: str,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        path: str = DEFAULT_ENDPOINT,
        user_agent: str = DEFAULT_USER_AGENT,
        tls: bool | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        policies: Mapping[BackoffClass, BackoffPolicy] | None = None,
        clock: Clock = time.time,
        sleep: SleepFn = anyio.sleep,
        resolver: Resolver = resolve_host,
        dialer: Dialer = dial,
        rng: random.Random | None = None,
    ) -> None:
        if not credential:
            raise StreamError.configuration(ERROR_CREDENTIAL_MISSING)
        self.session = Session(
            credential=credential,
            host=host,
            port=port,
            path=path,
            user_agent=user_agent,
            tls=tls,
        )
        self.connect_timeout = connect_timeout
        self.deadline = Deadline(clock=clock)
        self.connection = ConnectionManager(
            self.session,
            self.deadline,
            idle_timeout=idle_timeout,
            resolver=resolver,
            dialer=dialer,
            rng=rng,
        )
        self.backoff = BackoffController(self.deadline, policies, sleep)
        self._path = path
        self._record_limit = 0
        self._records = 0
        self._state = StreamState.RUNNING

    @classmethod
    def from_settings(cls, settings: StreamSettings, **kwargs) -> "StreamClient":
        """Build a client from settings; missing credentials are a configuration error."""
        if not settings.username:
            raise StreamError.configuration("missing username")
        if settings.password is None or not settings.password.get_secret_value():
            raise StreamError.configuration("missing password")
        client = cls(
            basic_credential(settings.username, settings.password.get_secret_value()),
            settings.host,
            settings.port,
            path=settings.endpoint,
            user_agent=settings.user_agent,
            tls=settings.tls,
            connect_timeout=settings.connect_timeout,
            idle_timeout=settings.idle_timeout,
            **kwargs,
        )
        client.set_record_limit(settings.max_records)
        if settings.max_seconds:
            client.set_deadline(client.deadline.now() + settings.max_seconds)
        return client

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def records_emitted(self) -> int:
        return self._records

    @property
    def path(self) -> str:
        return self._path

    def set_endpoint(self, path: str) -> None:
        self._path = path

    def set_deadline(self, at: float | None) -> None:
        """Set the absolute stop time in epoch seconds, or None to run forever."""
        self.deadline.set(at)

    def set_record_limit(self, limit: int | None) -> None:
        """Stop after ``limit`` records; previously emitted records do not count."""
        self._records = 0
        self._record_limit = limit or 0

    async def connect(self, path: str | None = None, timeout: float | None = None) -> None:
        """Make a single connection attempt; a success clears any backoff in progress."""
        if path is not None:
            self._path = path
        await self.connection.connect(self._path, self.connect_timeout if timeout is None else timeout)
        self.backoff.reset()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    async def _stop(self, state: StreamState, reason: str) -> None:
        logger.debug(reason)
        self._state = state
        await self.disconnect()

    async def _check_stop_conditions(self) -> bool:
        if self._record_limit > 0 and self._records >= self._record_limit:
            await self._stop(StreamState.STOPPED_BY_LIMIT, ERROR_OUT_OF_RECORDS)
            return True
        if self.deadline.expired():
            await self._stop(StreamState.STOPPED_BY_DEADLINE, "max runtime reached")
            return True
        return False

    async def _reconnect(self) -> None:
        """Keep trying to connect, backing off between failed attempts."""
        while True:
            try:
                await self.connect()
                return
            except StreamError as exc:
                cause = exc
            try:
                await self.backoff.backoff(cause)
            except StreamError:
                self._state = StreamState.FAILED
                await self.disconnect()
                raise

    async def next_record(self) -> Record | None:
        """Return the next record, or None once the stream is finished.

        Raises:
            StreamError: when reconnecting fails for good.
        """
        while not self._state.finished:
            if await self._check_stop_conditions():
                break
            remaining = self.deadline.remaining()
            try:
                line = await self.connection.read_line()
            except StreamError as exc:
                # An idle wait that was already shorter than the idle timeout was cut by the deadline.
                cut_by_deadline = (
                    exc.kind is ErrorKind.SOCKET_TIMEOUT
                    and remaining is not None
                    and remaining < self.connection.idle_timeout
                )
                if exc.kind is ErrorKind.DEADLINE_EXCEEDED or cut_by_deadline or self.deadline.expired():
                    await self._stop(StreamState.STOPPED_BY_DEADLINE, "max runtime reached")
                    break
                if self.connection.connected:
                    logger.info(f"Stream interrupted, reconnecting: {exc}")
                await self._reconnect()
                continue

            record = parse_record(line)
            if record is not None:
                self._records += 1
                return record
        return None

    def __aiter__(self) -> "StreamClient":
        return self

    async def __anext__(self) -> Record:
        record = await self.next_record()
        if record is None:
            raise StopAsyncIteration
        return record

    async def __aenter__(self) -> "StreamClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()
