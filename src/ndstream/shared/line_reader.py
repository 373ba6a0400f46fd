"""Framing of a byte stream into ``\\r\\n``-terminated lines."""

import logging

import anyio
from anyio.abc import ByteReceiveStream

from ndstream.shared.deadline import Deadline
from ndstream.shared.exceptions import StreamError
from ndstream.types import (
    DEFAULT_IDLE_TIMEOUT,
    LINE_TERMINATOR,
    SOCKET_EOF,
    SOCKET_ERROR,
    SOCKET_TIMEOUT,
    ErrorKind,
)

logger = logging.getLogger(__name__)

ERROR_SOCKET_ERROR = "connection error"
ERROR_SOCKET_TIMEOUT = "connection timed out"
ERROR_SOCKET_EOF = "remote server disconnected (EOF)"
ERROR_LINE_TOO_LONG = "line exceeds maximum size"

RECEIVE_SIZE = 65536
MAX_LINE_SIZE = 1024 * 1024


class LineReader:
    """Reads complete lines from a byte stream.

    Bytes that arrive after a line terminator stay in the pending buffer for
    the next call, so nothing is dropped or duplicated across calls. Every wait
    for more bytes is bounded by the lesser of ``idle_timeout`` and the time
    left before the deadline.
    """

    def __init__(
        self,
        stream: ByteReceiveStream,
        deadline: Deadline | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        max_line_size: int = MAX_LINE_SIZE,
    ) -> None:
        self._stream = stream
        self._deadline = deadline or Deadline()
        self._idle_timeout = idle_timeout
        self._max_line_size = max_line_size
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet framed into a line."""
        return bytes(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def _buffered_line(self) -> bytes | None:
        end = self._buffer.find(LINE_TERMINATOR)
        if end == -1:
            return None
        end += len(LINE_TERMINATOR)
        line = bytes(self._buffer[:end])
        del self._buffer[:end]
        return line

    async def read_line(self) -> bytes:
        """Return the next line, including its ``\\r\\n`` terminator.

        Raises:
            StreamError: SOCKET_EOF when the peer closed the stream,
                SOCKET_TIMEOUT when no bytes arrived within the bounded wait,
                SOCKET_ERROR when the stream itself failed or a line grows past
                ``max_line_size`` without a terminator, and
                DEADLINE_EXCEEDED when the session deadline has passed.
        """
        while (line := self._buffered_line()) is None:
            if len(self._buffer) > self._max_line_size:
                raise StreamError.create(ErrorKind.SOCKET_ERROR, SOCKET_ERROR, ERROR_LINE_TOO_LONG)
            timeout = self._deadline.remaining_timeout(self._idle_timeout)
            chunk = b""
            with anyio.move_on_after(timeout) as scope:
                try:
                    chunk = await self._stream.receive(RECEIVE_SIZE)
                except anyio.EndOfStream as exc:
                    raise StreamError.create(ErrorKind.SOCKET_EOF, SOCKET_EOF, ERROR_SOCKET_EOF) from exc
                except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as exc:
                    logger.debug(f"Stream receive failed: {exc!r}")
                    raise StreamError.create(ErrorKind.SOCKET_ERROR, SOCKET_ERROR, ERROR_SOCKET_ERROR) from exc
            if scope.cancelled_caught:
                raise StreamError.create(ErrorKind.SOCKET_TIMEOUT, SOCKET_TIMEOUT, ERROR_SOCKET_TIMEOUT)
            self._buffer.extend(chunk)
        logger.debug(f"Received line: {line.rstrip()!r}")
        return line
