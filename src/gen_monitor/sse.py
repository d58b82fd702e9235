from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

import msgspec

from .errors import ProtocolError


@dataclass(frozen=True)
class SseEvent:
    event: str
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        return decode_event_data(self)


def decode_event_data(ev: SseEvent) -> Any:
    if not ev.data.strip():
        raise ProtocolError(f"empty payload for event {ev.event!r}")
    try:
        return msgspec.json.decode(ev.data.encode("utf-8"))
    except msgspec.DecodeError as e:
        raise ProtocolError(f"malformed payload for event {ev.event!r}: {e}") from e


async def iter_sse_events(lines: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[SseEvent]:
    """
    Parse a `text/event-stream` body into events.

    Comment lines (`:`) are skipped, multi-line `data:` fields are joined with
    newlines, and an event is dispatched on each blank line.
    """
    event_name = "message"
    event_id: Optional[str] = None
    data_lines: List[str] = []
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield SseEvent(event=event_name or "message", data="\n".join(data_lines), id=event_id)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            data_lines.append(value)
        elif name == "id":
            event_id = value.strip() or None
