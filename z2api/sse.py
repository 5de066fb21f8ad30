from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional


@dataclass(frozen=True)
class UpstreamEvent:
    phase: str = ""
    delta_content: str = ""
    edit_content: str = ""
    done: bool = False

    @property
    def text(self) -> str:
        # delta and edit content are mutually exclusive per event
        return self.delta_content or self.edit_content


def _str(value: object) -> str:
    return value if isinstance(value, str) else ""


def parse_event_line(line: str) -> Optional[UpstreamEvent]:
    """Decode one ``data:`` line; anything else (comments, heartbeats, partial JSON) → None."""
    if not line or not line.startswith("data:"):
        return None
    payload_str = line[5:].strip()
    if not payload_str:
        return None
    try:
        obj = json.loads(payload_str)
    except ValueError:
        return None
    data = obj.get("data") if isinstance(obj, dict) else None
    if not isinstance(data, dict):
        return None
    return UpstreamEvent(
        phase=_str(data.get("phase")),
        delta_content=_str(data.get("delta_content")),
        edit_content=_str(data.get("edit_content")),
        done=data.get("done") is True,
    )


async def iter_events(lines: AsyncIterable[str]) -> AsyncIterator[UpstreamEvent]:
    """Lazily yield upstream events; stopping on ``done`` is up to the caller."""
    async for line in lines:
        event = parse_event_line(line)
        if event is not None:
            yield event
