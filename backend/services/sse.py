"""
text/event-stream framing shared by the gateway decoder (buffered bodies) and
the realtime store (live streams).
"""

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator


@dataclass(frozen=True)
class ServerEvent:
    event: str
    data: str


class EventFramer:
    """Feed lines one at a time; a blank line completes the pending event."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []

    def feed(self, line: str) -> ServerEvent | None:
        if line.startswith("event:"):
            self._event = line[6:].strip()
        elif line.startswith("data:"):
            self._data.append(line[5:].lstrip())
        elif not line.strip():
            return self.flush()
        # id:, retry: and comment lines are not used by either server
        return None

    def flush(self) -> ServerEvent | None:
        if not self._event and not self._data:
            return None
        event = ServerEvent(self._event or "message", "\n".join(self._data))
        self._event, self._data = "", []
        return event


def parse_events(lines: Iterable[str]) -> Iterator[ServerEvent]:
    """Events of a complete body. A trailing event without a blank line still counts."""
    framer = EventFramer()
    for line in lines:
        event = framer.feed(line)
        if event is not None:
            yield event
    event = framer.flush()
    if event is not None:
        yield event


async def aparse_events(lines: AsyncIterable[str]) -> AsyncIterator[ServerEvent]:
    """Events of a live stream. A partial event cut off by the stream end is dropped."""
    framer = EventFramer()
    async for line in lines:
        event = framer.feed(line)
        if event is not None:
            yield event
