"""Command line entry point: print stream records to standard output."""

import sys
from typing import Any
from urllib.parse import unquote_plus

import anyio
import click
from pydantic import ValidationError

from ndstream.client.settings import StreamSettings
from ndstream.client.stream import StreamClient
from ndstream.shared.exceptions import StreamError
from ndstream.shared.logging import configure_logging
from ndstream.types import ErrorKind, Record

PROG_NAME = "ndstream"

EPILOG = """\b
The server disconnects clients that do not consume the stream fast enough.
Anything that slows down collection, such as piping the output into a
pager, may cause disconnects.
"""

# Extra time allowed past --max-time before the run is abandoned outright.
HARD_LIMIT_GRACE = 5


def render_record(record: Record) -> str:
    return f"{record.screen_name} : {unquote_plus(record.text)}"


def _fail(message: str) -> None:
    click.echo(f"{PROG_NAME}: {message}", err=True)
    sys.exit(1)


async def run_stream(client: StreamClient, max_seconds: int = 0) -> int:
    """Connect once, then echo records until the stream finishes. Returns the record count."""
    with anyio.fail_after(max_seconds + HARD_LIMIT_GRACE if max_seconds else None):
        async with client:
            await client.connect()
            async for record in client:
                click.echo(render_record(record))
    return client.records_emitted


@click.command(name=PROG_NAME, epilog=EPILOG)
@click.option("-u", "--username", help="Username for the stream endpoint.")
@click.option("-p", "--password", help="Password for the stream endpoint.")
@click.option("-n", "--max-records", type=click.IntRange(min=0), help="Exit after this many records have been output.")
@click.option("-t", "--max-time", type=click.IntRange(min=0), help="Exit after this many seconds.")
@click.option("--host", help="Stream host name.")
@click.option("--port", type=click.IntRange(1, 65535), help="Stream port; 443 uses TLS.")
@click.option("--endpoint", help="Request path of the stream.")
@click.option("-v", "--verbose", count=True, help="Log more; repeat for debug output.")
def main(
    username: str | None,
    password: str | None,
    max_records: int | None,
    max_time: int | None,
    host: str | None,
    port: int | None,
    endpoint: str | None,
    verbose: int,
) -> None:
    """Connect to a streaming JSON API and print each record as "name : text"."""
    overrides: dict[str, Any] = {
        "username": username,
        "password": password,
        "max_records": max_records,
        "max_seconds": max_time,
        "host": host,
        "port": port,
        "endpoint": endpoint,
    }
    try:
        settings = StreamSettings(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as exc:
        _fail(str(exc))
        return

    if verbose:
        configure_logging("DEBUG" if verbose > 1 else "INFO")
    else:
        configure_logging(settings.log_level)

    try:
        client = StreamClient.from_settings(settings)
    except StreamError as exc:
        click.echo(f"{PROG_NAME}: {exc.message}", err=True)
        click.echo(f"Try '{PROG_NAME} --help' for more information.", err=True)
        sys.exit(1)

    try:
        anyio.run(run_stream, client, settings.max_seconds)
    except StreamError as exc:
        if exc.kind is ErrorKind.RETRY_EXHAUSTED:
            _fail(
                "reached the maximum retry limit while trying to reconnect after a connection error : "
                f"({exc.code}) {exc.message}"
            )
        else:
            _fail(f"encountered an unexpected error : ({exc.code}) {exc.message}")
    except TimeoutError:
        _fail("did not stop in time after reaching the maximum execution time")
