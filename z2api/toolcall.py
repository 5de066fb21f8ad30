from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False)


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class ToolCallReconstructor:
    """Collects streamed tool-call text until it forms one JSON object.

    Fragments may split anywhere, including inside a string token, so a failed
    parse just means "not finished yet". The first successful parse yields the
    invocation; after that the reconstructor is done and ignores input.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []
        self.invocation: Optional[ToolInvocation] = None

    @property
    def done(self) -> bool:
        return self.invocation is not None

    @property
    def buffer(self) -> str:
        return "".join(self._parts)

    def feed(self, fragment: str) -> Optional[ToolInvocation]:
        if self.done:
            return None
        self._parts.append(fragment)
        try:
            obj = json.loads(self.buffer)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None
        call_id = obj.get("id")
        name = obj.get("name")
        self.invocation = ToolInvocation(
            id=call_id if isinstance(call_id, str) and call_id else f"call_{uuid.uuid4().hex}",
            name=name if isinstance(name, str) else "",
            arguments=_decode_arguments(obj.get("arguments")),
        )
        return self.invocation
