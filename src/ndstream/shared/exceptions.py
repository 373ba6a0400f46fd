from ndstream.types import (
    CONFIGURATION_ERROR,
    OUT_OF_TIME,
    ErrorData,
    ErrorKind,
)

ERROR_OUT_OF_TIME = "maximum execution time reached"


class StreamError(Exception):
    """Exception raised for every failure in the stream client.

    The failure classification lives in ``error.kind`` rather than in a class
    hierarchy, so callers and the backoff controller branch on one tagged value.

    Attributes:
        error: The ErrorData describing the failure kind, code and message.
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def code(self) -> int:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    def __str__(self) -> str:
        return f"({self.error.code}) {self.error.message}"

    @classmethod
    def create(cls, kind: ErrorKind, code: int, message: str) -> "StreamError":
        return cls(ErrorData(kind=kind, code=code, message=message))

    @classmethod
    def configuration(cls, message: str) -> "StreamError":
        return cls.create(ErrorKind.CONFIGURATION, CONFIGURATION_ERROR, message)

    @classmethod
    def deadline_exceeded(cls) -> "StreamError":
        return cls.create(ErrorKind.DEADLINE_EXCEEDED, OUT_OF_TIME, ERROR_OUT_OF_TIME)

    @classmethod
    def retry_exhausted(cls, cause: "StreamError") -> "StreamError":
        """Wrap the last underlying failure, keeping its code and message."""
        return cls.create(ErrorKind.RETRY_EXHAUSTED, cause.code, cause.message)
