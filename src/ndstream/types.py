"""Data model shared by the ndstream client components."""

import base64
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

# TCP/IP error codes
TCP_ERROR = 111

# HTTP status codes
HTTP_OK = 200
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_REQUEST_TIMEOUT = 408
HTTP_IM_A_TEAPOT = 418
HTTP_ENHANCE_YOUR_CALM = 420
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500
HTTP_NOT_IMPLEMENTED = 501
HTTP_BAD_GATEWAY = 502
HTTP_SERVICE_UNAVAILABLE = 503
HTTP_GATEWAY_TIMEOUT = 504
# Used when the status line cannot be parsed
HTTP_ERROR = 600

# Socket error codes
SOCKET_ERROR = 1000
SOCKET_TIMEOUT = 1010
SOCKET_EOF = 1020

CONNECT_RETRY_MAX = 2010

# DNS error codes
DNS_ERROR = 3000
DNS_HOST_NOT_FOUND = 3010

OUT_OF_TIME = 4000
OUT_OF_RECORDS = 5000

CONFIGURATION_ERROR = 6000

DEFAULT_HOST = "stream.twitter.com"
DEFAULT_PORT = 443
DEFAULT_ENDPOINT = "/1.1/statuses/sample.json"
DEFAULT_USER_AGENT = "ndstream"
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_IDLE_TIMEOUT = 90.0

LINE_TERMINATOR = b"\r\n"


class ErrorKind(str, Enum):
    """Classification of every failure the client can raise."""

    CONFIGURATION = "configuration"
    DNS = "dns"
    TCP = "tcp"
    HTTP = "http"
    SOCKET_EOF = "socket_eof"
    SOCKET_TIMEOUT = "socket_timeout"
    SOCKET_ERROR = "socket_error"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    RETRY_EXHAUSTED = "retry_exhausted"


class ErrorData(BaseModel):
    """Error information carried by a StreamError."""

    kind: ErrorKind
    """The failure classification."""

    code: int
    """Numeric code: an HTTP status, an errno, or one of the module constants."""

    message: str
    """Human readable description, preserved unmodified through retries."""

    model_config = ConfigDict(frozen=True)


class StreamState(str, Enum):
    RUNNING = "running"
    STOPPED_BY_LIMIT = "stopped_by_limit"
    STOPPED_BY_DEADLINE = "stopped_by_deadline"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self is not StreamState.RUNNING


def basic_credential(username: str, password: str) -> str:
    """Build the base64 token used in a basic ``Authorization`` header."""
    return base64.b64encode(f"{username}:{password}".encode()).decode("ascii")


class Session(BaseModel):
    """Immutable description of the stream endpoint and how to authenticate."""

    credential: SecretStr
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    path: str = DEFAULT_ENDPOINT
    user_agent: str = DEFAULT_USER_AGENT
    tls: bool | None = None
    """Wrap the connection in TLS. Defaults to TLS only when port is 443."""

    model_config = ConfigDict(frozen=True)

    @property
    def use_tls(self) -> bool:
        if self.tls is None:
            return self.port == 443
        return self.tls

    @property
    def authorization(self) -> str:
        return f"Basic {self.credential.get_secret_value()}"

    def request_bytes(self, path: str | None = None) -> bytes:
        """Render the GET request sent on every connect."""
        lines = [
            f"GET {path or self.path} HTTP/1.1",
            f"Host: {self.host}",
            f"Authorization: {self.authorization}",
            f"User-Agent: {self.user_agent}",
            "",
            "",
        ]
        return "\r\n".join(lines).encode("utf-8")


class UserIdentity(BaseModel):
    screen_name: str = Field(min_length=1)

    model_config = ConfigDict(extra="allow")


class Record(BaseModel):
    """A stream record: a JSON object with text and a user identity.

    Unknown fields are kept so callers have access to the full payload.
    """

    text: str = Field(min_length=1)
    user: UserIdentity

    model_config = ConfigDict(extra="allow")

    @property
    def screen_name(self) -> str:
        return self.user.screen_name

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump()
