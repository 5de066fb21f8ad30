"""Rewrites the upstream's phase-tagged stream into clean output deltas.

The upstream tags every SSE fragment with a phase (``thinking``, ``answer``,
``tool_call``, ``other``) and wraps its content in web-UI markup: thinking is
a ``<details>`` element with blockquoted lines and a ``<summary>``, tool calls
are ``<glm_block>`` envelopes around half-escaped JSON. ``PhaseTransformer``
strips that markup fragment by fragment and renders reasoning according to
the configured think mode. It remembers the previous phase because a pause in
the upstream shows up as a phase flip: an ``other`` fragment that continues a
truncated tool call, or an ``answer`` fragment that re-sends the closed
thinking block.

One transformer (and one ``ToolCallReconstructor``) belongs to exactly one
stream; ``StreamSession`` creates both.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Union

from .config import THINK_MODES
from .sse import UpstreamEvent
from .toolcall import ToolCallReconstructor, ToolInvocation


@dataclass(frozen=True)
class ReasoningText:
    text: str


@dataclass(frozen=True)
class AnswerText:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    raw: str


# None stands for "nothing to emit"
NormalizedDelta = Union[ReasoningText, AnswerText, ToolCallFragment, ToolInvocation]


# tool_call envelope: <glm_block ...>{"type": "mcp", "data": {"metadata": {<call>, "result": ""...}}</glm_block>
_TOOL_HEAD_RE = re.compile(r'\n*<glm_block[^>]*>\{"type": "mcp", "data": \{"metadata": \{')
_TOOL_TAIL_RE = re.compile(r'", "result": "".*</glm_block>')
_PAUSED_TOOL_TAIL_RE = re.compile(r'null, "display_result": "".*</glm_block>')
_TOOL_MARKER = "glm_block"

_DETAILS_BLOCK_RE = re.compile(r"<details[^>]*?>.*?</details>", re.S)
_DETAILS_OPEN_RE = re.compile(r"<details[^>]*>\n*")
_DETAILS_CLOSE_RE = re.compile(r"\n*</details>")
_DETAILS_CLOSE = "</details>"
_SUMMARY_RE = re.compile(r"\n*<summary>.*?</summary>\n*")
_SUMMARY_MARKER = "summary>"
_SUMMARY_BLOCK_RE = re.compile(r"<summary>.*?</summary>", re.S)
_DURATION_RE = re.compile(r'duration="(\d+)"')
_BLOCKQUOTE_RE = re.compile(r"(^|\n)>\s?")

_REASONING_OPEN = "<reasoning>"
_REASONING_CLOSE = "</reasoning>"
_REASONING_OPEN_RE = re.compile(r"<reasoning>\n*")
_REASONING_CLOSE_RE = re.compile(r"\n*</reasoning>")
_REASONING_SPLIT_RE = re.compile(r"^(.*?</reasoning>)(.*)$", re.S)

_DETAILS_OPEN_HTML = '<details type="reasoning" open><div>'


@dataclass
class RewriteState:
    previous_phase: Optional[str] = None


def _details_trailer(preceding: str) -> str:
    summary = _SUMMARY_BLOCK_RE.search(preceding)
    if summary:
        return f"\n\n{summary.group(0)}"
    duration = _DURATION_RE.search(preceding)
    if duration:
        return f"\n\n<summary>Thought for {duration.group(1)} seconds</summary>"
    return ""


class PhaseTransformer:
    def __init__(self, think_mode: str = "reasoning") -> None:
        if think_mode not in THINK_MODES:
            raise ValueError(f"unknown think mode: {think_mode!r}")
        self.think_mode = think_mode
        self.state = RewriteState()

    def transform(self, event: UpstreamEvent) -> Optional[NormalizedDelta]:
        phase = event.phase or "other"
        content = event.text
        if not content:
            return None

        if phase == "tool_call":
            content = _TOOL_HEAD_RE.sub("{", content)
            content = _TOOL_TAIL_RE.sub("", content)
        elif phase == "other" and self.state.previous_phase == "tool_call" and _TOOL_MARKER in content:
            # The upstream paused mid tool call; this is the rest of its envelope
            phase = "tool_call"
            content = _TOOL_HEAD_RE.sub("{", content)
            content = _PAUSED_TOOL_TAIL_RE.sub('"}', content)

        if phase == "thinking" or (phase == "answer" and self._closes_reasoning(content)):
            content = self._rewrite_reasoning(phase, content)

        self.state.previous_phase = phase

        if phase == "thinking" and self.think_mode == "reasoning":
            return ReasoningText(content) if content else None
        if phase == "tool_call":
            return ToolCallFragment(content) if content else None
        if content:
            return AnswerText(content)
        return None

    def _closes_reasoning(self, content: str) -> bool:
        if _SUMMARY_MARKER in content:
            return True
        # A bare </details> only ends reasoning when thinking was still open
        return self.state.previous_phase == "thinking" and _DETAILS_CLOSE in content

    def _rewrite_reasoning(self, phase: str, content: str) -> str:
        content = _DETAILS_BLOCK_RE.sub("", content)
        for tag in ("</thinking>", "<Full>", "</Full>"):
            content = content.replace(tag, "")
        if phase == "thinking":
            content = _SUMMARY_RE.sub("\n\n", content)
        content = _DETAILS_OPEN_RE.sub(_REASONING_OPEN + "\n\n", content)
        content = _DETAILS_CLOSE_RE.sub("\n\n" + _REASONING_CLOSE, content)

        preceding = ""
        if phase == "answer":
            m = _REASONING_SPLIT_RE.match(content)
            if m:
                preceding, after = m.group(1), m.group(2)
                if not after.strip():
                    content = "\n\n" + _REASONING_CLOSE
                elif self.state.previous_phase == "thinking":
                    # thinking was interrupted: close it and keep the answer text
                    content = "\n\n" + _REASONING_CLOSE + "\n\n" + after.lstrip("\n")
                elif self.state.previous_phase == "answer":
                    # mid-answer pause re-sending what was already streamed
                    content = ""

        return self._apply_mode(phase, content, preceding)

    def _apply_mode(self, phase: str, content: str, preceding: str) -> str:
        mode = self.think_mode
        if phase == "thinking" and mode != "strip":
            content = _BLOCKQUOTE_RE.sub(r"\1", content)

        if mode == "reasoning":
            content = _SUMMARY_RE.sub("", content)
            content = _REASONING_OPEN_RE.sub("", content)
            content = _REASONING_CLOSE_RE.sub("", content)
        elif mode == "think":
            content = _SUMMARY_RE.sub("", content)
            content = content.replace(_REASONING_OPEN, "<think>").replace(_REASONING_CLOSE, "</think>")
        elif mode == "strip":
            content = _SUMMARY_RE.sub("", content)
            content = _REASONING_OPEN_RE.sub("", content)
            content = content.replace(_REASONING_CLOSE, "")
        else:
            content = content.replace(_REASONING_OPEN, _DETAILS_OPEN_HTML)
            trailer = _details_trailer(preceding) if phase == "answer" else ""
            content = content.replace(_REASONING_CLOSE, f"</div>{trailer}</details>")
        return content


class StreamSession:
    """Per-stream pipeline: phase rewriting plus tool-call reconstruction."""

    def __init__(self, think_mode: str = "reasoning") -> None:
        self.transformer = PhaseTransformer(think_mode)
        self.tools = ToolCallReconstructor()
        self.reasoning_parts: List[str] = []
        self.answer_parts: List[str] = []

    def feed(self, event: UpstreamEvent) -> Optional[NormalizedDelta]:
        delta = self.transformer.transform(event)
        if isinstance(delta, ToolCallFragment):
            return self.tools.feed(delta.raw)
        if isinstance(delta, ReasoningText):
            self.reasoning_parts.append(delta.text)
        elif isinstance(delta, AnswerText):
            self.answer_parts.append(delta.text)
        return delta

    @property
    def tool_invocation(self) -> Optional[ToolInvocation]:
        return self.tools.invocation

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning_parts)

    @property
    def answer_text(self) -> str:
        return "".join(self.answer_parts)

    @property
    def completion_text(self) -> str:
        return self.reasoning_text + self.answer_text
