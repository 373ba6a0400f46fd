"""Connection lifecycle for the streaming endpoint: resolve, dial, handshake."""

import ipaddress
import logging
import random
import socket
import ssl
from collections.abc import Awaitable, Callable

import anyio
from anyio.abc import ByteStream

from ndstream.shared.deadline import Deadline
from ndstream.shared.exceptions import StreamError
from ndstream.shared.line_reader import LineReader
from ndstream.types import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_IDLE_TIMEOUT,
    DNS_HOST_NOT_FOUND,
    HTTP_ERROR,
    HTTP_OK,
    SOCKET_ERROR,
    TCP_ERROR,
    ErrorKind,
    Session,
)

logger = logging.getLogger(__name__)

ERROR_DNS_HOST_NOT_FOUND = "host not found"
ERROR_HTTP_ERROR = "HTTP error"
ERROR_CONNECT_TIMEOUT = "connection timed out"
ERROR_CONNECT_FAILED = "connection failed"
ERROR_NOT_CONNECTED = "not connected"

Resolver = Callable[[str, int], Awaitable[list[str]]]
Dialer = Callable[[str, int, Session], Awaitable[ByteStream]]


async def resolve_host(host: str, port: int) -> list[str]:
    """Return every IP address the host resolves to."""
    try:
        ipaddress.ip_address(host)
    except ValueError:
        # A trailing dot stops the resolver from trying local search domains.
        host = host if host.endswith(".") else f"{host}."
    else:
        return [host]
    infos = await anyio.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


async def dial(address: str, port: int, session: Session) -> ByteStream:
    """Open a TCP connection, wrapped in TLS when the session asks for it."""
    if session.use_tls:
        return await anyio.connect_tcp(
            address,
            port,
            ssl_context=ssl.create_default_context(),
            tls_hostname=session.host,
        )
    return await anyio.connect_tcp(address, port)


def parse_status_line(line: bytes) -> tuple[int, str]:
    """Split an HTTP status line into its numeric code and reason.

    Lines that cannot be parsed produce the generic HTTP error code.
    """
    parts = line.decode("latin-1").strip().split(None, 2)
    if len(parts) < 2 or not (parts[1].isascii() and parts[1].isdecimal()):
        return HTTP_ERROR, ERROR_HTTP_ERROR
    reason = parts[2] if len(parts) > 2 else ERROR_HTTP_ERROR
    return int(parts[1]), reason


class ConnectionManager:
    """Owns the single live connection of a session.

    ``connect`` makes exactly one attempt and raises a classified StreamError
    (DNS, TCP or HTTP) on failure; retrying is left to the caller.
    """

    def __init__(
        self,
        session: Session,
        deadline: Deadline | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        resolver: Resolver = resolve_host,
        dialer: Dialer = dial,
        rng: random.Random | None = None,
    ) -> None:
        self.session = session
        self.deadline = deadline or Deadline()
        self.idle_timeout = idle_timeout
        self._resolver = resolver
        self._dialer = dialer
        self._rng = rng or random.Random()
        self._stream: ByteStream | None = None
        self._reader: LineReader | None = None
        self.address: str | None = None

    @property
    def connected(self) -> bool:
        return self._stream is not None

    async def _host_address(self, timeout: float) -> str:
        try:
            with anyio.fail_after(timeout):
                addresses = await self._resolver(self.session.host, self.session.port)
        except (OSError, TimeoutError) as exc:
            logger.debug(f"Resolving {self.session.host} failed: {exc}")
            raise StreamError.create(ErrorKind.DNS, DNS_HOST_NOT_FOUND, ERROR_DNS_HOST_NOT_FOUND) from exc
        if not addresses:
            raise StreamError.create(ErrorKind.DNS, DNS_HOST_NOT_FOUND, ERROR_DNS_HOST_NOT_FOUND)
        # Pick one at random so a bad address can be avoided on the next attempt.
        return self._rng.choice(addresses)

    async def _open(self, address: str, timeout: float) -> ByteStream:
        try:
            with anyio.fail_after(timeout):
                return await self._dialer(address, self.session.port, self.session)
        except TimeoutError as exc:
            raise StreamError.create(ErrorKind.TCP, TCP_ERROR, ERROR_CONNECT_TIMEOUT) from exc
        except (OSError, anyio.BrokenResourceError) as exc:
            code = getattr(exc, "errno", None) or TCP_ERROR
            message = getattr(exc, "strerror", None) or str(exc) or ERROR_CONNECT_FAILED
            raise StreamError.create(ErrorKind.TCP, code, message) from exc

    async def connect(self, path: str | None = None, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        """Open the stream and complete the HTTP handshake.

        Raises:
            StreamError: DNS when the host does not resolve, TCP when the dial
                fails, HTTP when the status is not 200, a socket kind when the
                stream breaks mid-handshake, and DEADLINE_EXCEEDED when the
                session deadline has passed.
        """
        await self.disconnect()

        address = await self._host_address(self.deadline.remaining_timeout(timeout))
        logger.debug(f"Connecting to {self.session.host} ({address}) port {self.session.port}")
        stream = await self._open(address, self.deadline.remaining_timeout(timeout))
        self._stream = stream
        self._reader = LineReader(stream, self.deadline, self.idle_timeout)
        self.address = address

        try:
            await self._handshake(path)
        except BaseException:
            await self.disconnect()
            raise
        logger.info(f"Connected to {self.session.host} ({address}) {path or self.session.path}")

    async def _handshake(self, path: str | None) -> None:
        assert self._stream is not None and self._reader is not None
        try:
            await self._stream.send(self.session.request_bytes(path))
        except (OSError, anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            raise StreamError.create(ErrorKind.SOCKET_ERROR, SOCKET_ERROR, str(exc) or ERROR_NOT_CONNECTED) from exc

        code, reason = parse_status_line(await self._reader.read_line())
        if code != HTTP_OK:
            raise StreamError.create(ErrorKind.HTTP, code, reason)

        # The headers carry nothing the client needs.
        while (await self._reader.read_line()).strip():
            pass

    async def read_line(self) -> bytes:
        if self._reader is None:
            raise StreamError.create(ErrorKind.SOCKET_ERROR, SOCKET_ERROR, ERROR_NOT_CONNECTED)
        return await self._reader.read_line()

    async def disconnect(self) -> None:
        """Close the connection if there is one. Never raises."""
        stream, self._stream = self._stream, None
        if self._reader is not None:
            self._reader.clear()
            self._reader = None
        self.address = None
        if stream is None:
            return
        with anyio.CancelScope(shield=True):
            try:
                await stream.aclose()
            except (OSError, anyio.BrokenResourceError) as exc:
                logger.debug(f"Ignoring error while closing stream: {exc!r}")
        logger.debug("Disconnected")
