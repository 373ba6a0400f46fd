"""A client for streaming HTTP APIs that deliver newline-delimited JSON records.

The client holds one long-lived connection, frames ``\\r\\n``-terminated lines
out of it, keeps only well-formed records, and reconnects with per-failure
backoff until a record limit or a deadline stops it.

## Example

```python
import time

import anyio
from ndstream import StreamClient, basic_credential

async def main():
    client = StreamClient(basic_credential("user", "secret"))
    client.set_record_limit(10)
    client.set_deadline(time.time() + 60)
    async with client:
        async for record in client:
            print(record.screen_name, ":", record.text)

anyio.run(main)
```
"""

from .client.backoff import BackoffClass, BackoffController, BackoffPolicy
from .client.connection import ConnectionManager
from .client.settings import StreamSettings
from .client.stream import StreamClient
from .shared.deadline import Deadline
from .shared.exceptions import StreamError
from .shared.line_reader import LineReader
from .types import ErrorData, ErrorKind, Record, Session, StreamState, UserIdentity, basic_credential

__all__ = [
    "BackoffClass",
    "BackoffController",
    "BackoffPolicy",
    "ConnectionManager",
    "Deadline",
    "ErrorData",
    "ErrorKind",
    "LineReader",
    "Record",
    "Session",
    "StreamClient",
    "StreamError",
    "StreamSettings",
    "StreamState",
    "UserIdentity",
    "basic_credential",
]
