from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple, Union


Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    url: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    text: str


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]
# A message holds either plain text or an ordered tuple of blocks
ContentValue = Union[str, Tuple[ContentBlock, ...]]


@dataclass(frozen=True)
class CanonicalMessage:
    role: Role
    content: ContentValue

    def __post_init__(self) -> None:
        if isinstance(self.content, str):
            return
        for block in self.content:
            if isinstance(block, ToolUseBlock) and self.role != "assistant":
                raise ValueError("tool_use blocks are only valid in assistant messages")
            if isinstance(block, ToolResultBlock) and self.role != "tool":
                raise ValueError("tool_result blocks are only valid in tool messages")

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        parts = []
        for block in self.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(block.text)
        return "".join(parts)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class CanonicalRequest:
    model: str
    messages: Tuple[CanonicalMessage, ...]
    chat_id: str
    message_id: str
    tools: Tuple[ToolSpec, ...] = ()
    # None: the model does not support thinking, leave the flag out entirely
    thinking_enabled: Optional[bool] = False
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
