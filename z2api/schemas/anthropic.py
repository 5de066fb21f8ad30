from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# Anthropic v1/messages response shapes produced by the gateway


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class MessageResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    # thinking / text / tool_use blocks
    content: List[Dict[str, Any]] = Field(default_factory=list)
    stop_reason: Optional[Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


class ErrorBody(BaseModel):
    type: str
    message: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody
