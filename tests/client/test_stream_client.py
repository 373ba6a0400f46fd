"""Tests for the stream read loop: filtering, stop conditions and reconnection."""

import socket
import time

import anyio
import pytest

from ndstream.client.settings import StreamSettings
from ndstream.client.stream import StreamClient, parse_record
from ndstream.shared.exceptions import StreamError
from ndstream.types import TCP_ERROR, ErrorKind, StreamState, basic_credential
from tests.test_helpers import (
    OK_RESPONSE,
    RECORD_LINE,
    STALL,
    FakeClock,
    FakeDialer,
    FakeResolver,
    RecordingSleep,
    ScriptedByteStream,
    record_line,
)


def make_client(*streams, resolver=None, clock=None, sleep=None, **kwargs) -> StreamClient:
    clock = clock or FakeClock()
    return StreamClient(
        basic_credential("user", "secret"),
        "stream.example.com",
        8080,
        clock=clock,
        sleep=sleep or RecordingSleep(clock),
        resolver=resolver or FakeResolver(["10.0.0.1"]),
        dialer=FakeDialer(*streams),
        **kwargs,
    )


def test_parse_record_accepts_text_and_user():
    record = parse_record(b'{"text":"hello","user":{"screen_name":"alice"}}\r\n')
    assert record is not None
    assert record.text == "hello"
    assert record.screen_name == "alice"


def test_parse_record_keeps_extra_fields():
    record = parse_record(b'{"id":1,"text":"hi","user":{"screen_name":"bob","id":2}}')
    assert record is not None
    assert record.as_dict()["id"] == 1
    assert record.as_dict()["user"]["id"] == 2


@pytest.mark.parametrize(
    "line",
    [
        b"\r\n",
        b"",
        b'{"delete":{"status":{"id":1}}}\r\n',
        b'{"limit":{"track":12}}\r\n',
        b'{"text":"no user"}\r\n',
        b'{"text":"","user":{"screen_name":"alice"}}\r\n',
        b'{"text":"hi","user":{}}\r\n',
        b'{"text":"hi","user":"alice"}\r\n',
        b'{"text":"broken\r\n',
        b'["text","user"]\r\n',
        b"Exceeded connection limit for user\r\n",
    ],
)
def test_parse_record_discards_non_records(line: bytes):
    assert parse_record(line) is None


def test_missing_credential_is_configuration_error():
    with pytest.raises(StreamError) as exc_info:
        StreamClient("")
    assert exc_info.value.kind is ErrorKind.CONFIGURATION


@pytest.mark.anyio
async def test_emits_only_valid_records():
    stream = ScriptedByteStream(
        [*OK_RESPONSE, b"\r\n", b'{"limit":{"track":1}}\r\n', RECORD_LINE, b"\r\n", STALL]
    )
    client = make_client(stream, idle_timeout=0.05)
    client.set_record_limit(1)
    await client.connect()

    record = await client.next_record()

    assert record is not None
    assert record.screen_name == "alice"
    assert client.records_emitted == 1


@pytest.mark.anyio
async def test_record_limit_stops_before_next_read():
    stream = ScriptedByteStream([*OK_RESPONSE, record_line("a", "u1"), record_line("b", "u2"), record_line("c", "u3")])
    client = make_client(stream)
    client.set_record_limit(2)
    await client.connect()

    records = [record async for record in client]

    assert [r.text for r in records] == ["a", "b"]
    assert client.state is StreamState.STOPPED_BY_LIMIT
    assert stream.receive_calls == 5
    assert stream.script == [record_line("c", "u3")]
    assert stream.closed
    assert await client.next_record() is None


@pytest.mark.anyio
async def test_set_record_limit_resets_counter():
    client = make_client(ScriptedByteStream([*OK_RESPONSE, RECORD_LINE, RECORD_LINE]))
    await client.connect()
    assert await client.next_record() is not None
    assert client.records_emitted == 1

    client.set_record_limit(1)
    assert client.records_emitted == 0
    assert await client.next_record() is not None
    assert await client.next_record() is None
    assert client.state is StreamState.STOPPED_BY_LIMIT


@pytest.mark.anyio
async def test_expired_deadline_stops_gracefully():
    clock = FakeClock()
    stream = ScriptedByteStream([*OK_RESPONSE, RECORD_LINE])
    client = make_client(stream, clock=clock)
    await client.connect()

    client.set_deadline(clock.now)

    assert await client.next_record() is None
    assert client.state is StreamState.STOPPED_BY_DEADLINE
    assert stream.closed


class ClockAdvancingStream(ScriptedByteStream):
    """Moves the fake clock forward every time bytes arrive."""

    def __init__(self, script, clock: FakeClock, step: float) -> None:
        super().__init__(script)
        self.clock = clock
        self.step = step

    async def receive(self, max_bytes: int = 65536) -> bytes:
        data = await super().receive(max_bytes)
        self.clock.advance(self.step)
        return data


@pytest.mark.anyio
async def test_deadline_reached_while_reading_stops_gracefully():
    clock = FakeClock()
    # Three handshake chunks leave one second; the partial record uses it up.
    stream = ClockAdvancingStream([*OK_RESPONSE, b'{"text":"par', RECORD_LINE], clock, step=3)
    client = make_client(stream, clock=clock)
    client.set_deadline(clock.now + 10)
    await client.connect()

    assert await client.next_record() is None

    assert client.state is StreamState.STOPPED_BY_DEADLINE
    assert stream.closed
    assert stream.script == [RECORD_LINE]


@pytest.mark.anyio
async def test_deadline_reached_on_quiet_stream_stops_gracefully():
    stream = ScriptedByteStream([*OK_RESPONSE, STALL])
    sleep = RecordingSleep()
    client = make_client(stream, clock=time.time, sleep=sleep)
    client.set_deadline(time.time() + 0.3)
    await client.connect()

    with anyio.fail_after(5):
        assert await client.next_record() is None

    assert client.state is StreamState.STOPPED_BY_DEADLINE
    assert stream.closed
    assert sleep.calls == []


@pytest.mark.anyio
async def test_reconnects_after_eof_and_keeps_order():
    first = ScriptedByteStream([*OK_RESPONSE, record_line("one", "a")])
    second = ScriptedByteStream([*OK_RESPONSE, record_line("two", "b"), record_line("three", "c")])
    sleep = RecordingSleep()
    client = make_client(first, second, sleep=sleep)
    client.set_record_limit(3)
    await client.connect()

    records = [record async for record in client]

    assert [r.text for r in records] == ["one", "two", "three"]
    assert first.closed
    assert sleep.calls == []
    assert client.backoff.state.backoff_class is None


@pytest.mark.anyio
async def test_partial_record_across_disconnect_is_dropped():
    first = ScriptedByteStream([*OK_RESPONSE, b'{"text":"lost","us'])
    second = ScriptedByteStream([*OK_RESPONSE, b'er":{"screen_name":"x"}}\r\n', record_line("kept", "b")])
    client = make_client(first, second)
    client.set_record_limit(1)
    await client.connect()

    record = await client.next_record()

    assert record is not None
    assert record.text == "kept"


@pytest.mark.anyio
async def test_reconnect_backs_off_then_resets_on_success():
    clock = FakeClock()
    sleep = RecordingSleep(clock)
    first = ScriptedByteStream([*OK_RESPONSE])
    refused = ConnectionRefusedError(111, "Connection refused")
    third = ScriptedByteStream([*OK_RESPONSE, RECORD_LINE])
    client = make_client(first, refused, refused, third, clock=clock, sleep=sleep)
    await client.connect()

    record = await client.next_record()

    assert record is not None
    assert sleep.millis == [250, 500]
    assert client.backoff.state.backoff_class is None
    assert client.state is StreamState.RUNNING


@pytest.mark.anyio
async def test_next_record_connects_when_not_connected():
    client = make_client(ScriptedByteStream([*OK_RESPONSE, RECORD_LINE]))
    record = await client.next_record()
    assert record is not None


@pytest.mark.anyio
async def test_dns_failures_back_off_exponentially():
    clock = FakeClock()
    sleep = RecordingSleep(clock)
    gaierror = socket.gaierror(-2, "Name or service not known")
    resolver = FakeResolver(gaierror, gaierror, gaierror, ["10.0.0.1"])
    client = make_client(ScriptedByteStream([*OK_RESPONSE, RECORD_LINE]), resolver=resolver, clock=clock, sleep=sleep)

    assert await client.next_record() is not None
    assert sleep.millis == [1000, 2000, 4000]


@pytest.mark.anyio
async def test_non_retryable_http_status_fails():
    stream = ScriptedByteStream([b"HTTP/1.1 406 Not Acceptable\r\n", b"\r\n"])
    client = make_client(stream)

    with pytest.raises(StreamError) as exc_info:
        await client.next_record()

    assert exc_info.value.kind is ErrorKind.HTTP
    assert exc_info.value.code == 406
    assert client.state is StreamState.FAILED
    assert await client.next_record() is None


@pytest.mark.anyio
async def test_retry_exhausted_propagates_original_error():
    client = make_client(*[ConnectionRefusedError(111, "Connection refused")] * 65)

    with pytest.raises(StreamError) as exc_info:
        await client.next_record()

    assert exc_info.value.kind is ErrorKind.RETRY_EXHAUSTED
    assert exc_info.value.code == TCP_ERROR
    assert client.state is StreamState.FAILED


@pytest.mark.anyio
async def test_backoff_past_deadline_fails():
    clock = FakeClock()
    client = make_client(ConnectionRefusedError(111, "Connection refused"), clock=clock)
    client.set_deadline(clock.now + 0.1)

    with pytest.raises(StreamError) as exc_info:
        await client.next_record()

    assert exc_info.value.kind is ErrorKind.DEADLINE_EXCEEDED
    assert client.state is StreamState.FAILED


@pytest.mark.anyio
async def test_connect_is_a_single_attempt():
    client = make_client(ConnectionRefusedError(111, "Connection refused"))

    with pytest.raises(StreamError) as exc_info:
        await client.connect()

    assert exc_info.value.kind is ErrorKind.TCP
    assert client.state is StreamState.RUNNING


@pytest.mark.anyio
async def test_set_endpoint_applies_to_reconnects():
    first = ScriptedByteStream(OK_RESPONSE)
    second = ScriptedByteStream([*OK_RESPONSE, RECORD_LINE])
    client = make_client(first, second)

    await client.connect()
    client.set_endpoint("/2/filter.json")
    record = await client.next_record()

    assert record is not None
    assert bytes(first.sent).startswith(b"GET /1.1/statuses/sample.json HTTP/1.1\r\n")
    assert bytes(second.sent).startswith(b"GET /2/filter.json HTTP/1.1\r\n")


@pytest.mark.anyio
async def test_context_manager_disconnects():
    stream = ScriptedByteStream([*OK_RESPONSE, RECORD_LINE])
    async with make_client(stream) as client:
        await client.connect("/other.json")
        assert client.path == "/other.json"
    assert stream.closed


def test_from_settings():
    settings = StreamSettings(username="user", password="secret", host="localhost", port=8080, max_records=5)
    client = StreamClient.from_settings(settings)

    assert client.session.host == "localhost"
    assert client.session.credential.get_secret_value() == basic_credential("user", "secret")
    assert not client.session.use_tls
    assert client.deadline.at is None


def test_from_settings_sets_deadline():
    clock = FakeClock()
    client = StreamClient.from_settings(StreamSettings(username="u", password="p", max_seconds=30), clock=clock)
    assert client.deadline.at == clock.now + 30


@pytest.mark.parametrize(
    "username, password, message",
    [(None, "p", "missing username"), ("u", None, "missing password"), ("u", "", "missing password")],
)
def test_from_settings_requires_credentials(username, password, message):
    settings = StreamSettings(username=username, password=password)
    with pytest.raises(StreamError) as exc_info:
        StreamClient.from_settings(settings)
    assert exc_info.value.kind is ErrorKind.CONFIGURATION
    assert exc_info.value.message == message
