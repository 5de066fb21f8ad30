from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


# Union of the OpenAI chat-completions and Anthropic messages request bodies.
# Only the message list is validated strictly; every optional field is typed
# loosely and sanitized by the normalizer so bad values read as absent.


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Any = None
    content: Any = None
    # OpenAI assistant tool calls / tool role reply
    tool_calls: Any = None
    tool_call_id: Any = None


class InboundRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Any = None
    messages: Optional[List[InboundMessage]] = None
    system: Any = None
    stream: Any = False
    stream_options: Any = None
    temperature: Any = None
    top_p: Any = None
    max_tokens: Any = None
    frequency_penalty: Any = None
    presence_penalty: Any = None
    tools: Any = None
    # Thinking switches in their three inbound shapes
    features: Any = None
    enable_thinking: Any = None
    thinking: Any = None

    def wants_stream(self) -> bool:
        return self.stream is True

    def include_usage(self) -> bool:
        opts = self.stream_options
        if isinstance(opts, dict) and isinstance(opts.get("include_usage"), bool):
            return opts["include_usage"]
        return True

    def sampling_params(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key in ("temperature", "top_p", "frequency_penalty", "presence_penalty"):
            value = getattr(self, key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                out[key] = value
        if isinstance(self.max_tokens, int) and not isinstance(self.max_tokens, bool) and self.max_tokens > 0:
            out["max_tokens"] = self.max_tokens
        return out
