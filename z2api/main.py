from __future__ import annotations

import json
import sys
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import wire
from .config import settings
from .errors import RequestFormatError, UpstreamError
from .http_client import close_httpx_client, get_httpx_client
from .phase import StreamSession
from .schema_registry import CatalogModel, ModelCatalog
from .schemas.canonical import CanonicalRequest
from .schemas.inbound import InboundRequest
from .sse import iter_events
from .tokens import count_tokens
from .toolcall import ToolInvocation
from .transform import RequestNormalizer, extract_text, last_user_text, parse_request, to_upstream_payload
from .upstream import UpstreamClient
from .users import UserService


app = FastAPI(title="z2api")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

users = UserService()
catalog = ModelCatalog(users)
upstream = UpstreamClient(users)

_RECENT = deque(maxlen=64)


@dataclass
class _PreparedChat:
    inbound: InboundRequest
    request: CanonicalRequest
    display_model: str
    prompt_tokens: int
    response: httpx.Response


async def _catalog_models() -> List[CatalogModel]:
    try:
        return await catalog.get_models()
    except UpstreamError as e:
        # Requests still go through with the model id passed as-is
        print(f"[z2api] model catalog unavailable: {e.message}", file=sys.stderr)
        return catalog.cached


async def _prepare(body: Any, rec: Dict[str, Any]) -> _PreparedChat:
    """Normalize the inbound body and open the upstream stream.

    Raises ``RequestFormatError`` for unusable input and ``UpstreamError`` when
    the upstream call fails; nothing has been sent to the caller yet.
    """
    inbound = parse_request(body)
    display_model = inbound.model if isinstance(inbound.model, str) and inbound.model else settings.default_model

    chat_id = str(uuid.uuid4())
    message_id = str(uuid.uuid4())
    normalizer = RequestNormalizer(await _catalog_models(), upload_image=upstream.upload_image)
    request = await normalizer.normalize(inbound, chat_id, message_id)
    rec.update({"model": display_model, "upstream_model": request.model, "chat_id": chat_id})

    prompt_tokens = count_tokens(extract_text(request.messages))
    payload = to_upstream_payload(request)
    response = await upstream.open_chat(payload, chat_id, last_user_text(request.messages))
    return _PreparedChat(inbound, request, display_model, prompt_tokens, response)


async def _session_deltas(
    prepared: _PreparedChat, session: StreamSession, request: Optional[Request] = None
) -> AsyncIterator[Any]:
    """Yield normalized deltas until ``done``, a tool invocation, or disconnect."""
    async for event in iter_events(prepared.response.aiter_lines()):
        if request is not None and await request.is_disconnected():
            print("[z2api] client disconnected during streaming", file=sys.stderr)
            return
        if event.done:
            return
        delta = session.feed(event)
        if delta is None:
            continue
        if settings.debug_msg:
            print(f"[z2api] delta: {delta!r}", file=sys.stderr)
        yield delta
        if isinstance(delta, ToolInvocation):
            return


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (ValueError, UnicodeDecodeError) as e:
        raise RequestFormatError("Invalid JSON body") from e


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    rec: Dict[str, Any] = {"endpoint": "chat.completions", "phase": "start"}
    try:
        prepared = await _prepare(await _read_json(request), rec)
    except RequestFormatError as e:
        return JSONResponse(status_code=400, content=wire.openai_error(str(e), code=400))
    except UpstreamError as e:
        rec.update({"phase": "upstream_error", "message": e.message})
        _RECENT.append(rec)
        status = e.http_status
        return JSONResponse(status_code=status, content=wire.openai_error(e.message, "upstream_error", status))

    include_usage = prepared.inbound.include_usage()
    completion_id = wire.new_completion_id()
    model = prepared.display_model
    session = StreamSession(settings.think_mode)

    def usage() -> Dict[str, int]:
        return wire.openai_usage(prepared.prompt_tokens, count_tokens(session.completion_text))

    if not prepared.inbound.wants_stream():
        try:
            async for _ in _session_deltas(prepared, session):
                pass
        except httpx.HTTPError as e:
            return JSONResponse(status_code=502, content=wire.openai_error(str(e), "upstream_error", 502))
        finally:
            await prepared.response.aclose()
        rec["phase"] = "non_stream_ok"
        _RECENT.append(rec)
        return JSONResponse(
            content=wire.openai_completion(completion_id, model, session, usage() if include_usage else None)
        )

    async def event_stream(request: Request) -> AsyncIterator[bytes]:
        try:
            async for delta in _session_deltas(prepared, session, request):
                chunk_delta = wire.openai_delta(delta)
                if chunk_delta is not None:
                    yield wire.sse_data(wire.openai_chunk(completion_id, model, chunk_delta))
            finish = "tool_calls" if session.tool_invocation is not None else "stop"
            yield wire.sse_data(wire.openai_chunk(completion_id, model, {}, finish))
            if include_usage:
                yield wire.sse_data(wire.openai_usage_chunk(completion_id, model, usage()))
            rec["phase"] = "stream_ok"
        except httpx.HTTPError as e:
            print(f"[z2api] stream exception: {type(e).__name__}: {e}", file=sys.stderr)
            yield wire.sse_data(wire.openai_error(str(e), "upstream_error", 502))
            rec.update({"phase": "stream_exception", "message": str(e)})
        finally:
            await prepared.response.aclose()
            _RECENT.append(rec)
        yield wire.DONE

    return StreamingResponse(event_stream(request), media_type="text/event-stream")


@app.post("/v1/messages")
async def messages(request: Request):
    rec: Dict[str, Any] = {"endpoint": "messages", "phase": "start"}
    try:
        prepared = await _prepare(await _read_json(request), rec)
    except RequestFormatError as e:
        return JSONResponse(status_code=400, content=wire.anthropic_error_for_status(400, str(e)))
    except UpstreamError as e:
        rec.update({"phase": "upstream_error", "message": e.message})
        _RECENT.append(rec)
        status = e.http_status
        return JSONResponse(status_code=status, content=wire.anthropic_error_for_status(status, e.message))

    message_id = wire.new_message_id()
    model = prepared.display_model
    session = StreamSession(settings.think_mode)

    if not prepared.inbound.wants_stream():
        try:
            async for _ in _session_deltas(prepared, session):
                pass
        except httpx.HTTPError as e:
            return JSONResponse(status_code=502, content=wire.anthropic_error_for_status(502, str(e)))
        finally:
            await prepared.response.aclose()
        rec["phase"] = "non_stream_ok"
        _RECENT.append(rec)
        return JSONResponse(
            content=wire.anthropic_message(
                message_id, model, session, prepared.prompt_tokens, count_tokens(session.completion_text)
            )
        )

    async def event_stream(request: Request) -> AsyncIterator[bytes]:
        writer = wire.AnthropicStreamWriter(message_id, model, prepared.prompt_tokens)
        yield writer.start()
        try:
            async for delta in _session_deltas(prepared, session, request):
                for chunk in writer.feed(delta):
                    yield chunk
            for chunk in writer.finish(count_tokens(session.completion_text)):
                yield chunk
            rec["phase"] = "stream_ok"
        except httpx.HTTPError as e:
            print(f"[z2api] stream exception: {type(e).__name__}: {e}", file=sys.stderr)
            for chunk in writer.error(str(e)):
                yield chunk
            rec.update({"phase": "stream_exception", "message": str(e)})
        finally:
            await prepared.response.aclose()
            _RECENT.append(rec)

    return StreamingResponse(event_stream(request), media_type="text/event-stream")


@app.get("/")
async def root():
    return {"ok": True, "backend": settings.base_url}


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": int(time.time())}


@app.get("/v1/models")
async def list_models():
    try:
        models = await catalog.get_models()
    except UpstreamError as e:
        status = e.http_status
        return JSONResponse(status_code=status, content=wire.openai_error(e.message, "upstream_error", status))
    return JSONResponse(content=catalog.to_openai_list(models))


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


# Admin: drop the cached model catalog so the next request refetches it
@app.delete("/_models_cache")
async def clear_models_cache():
    removed = bool(catalog.cached)
    catalog.clear()
    return {"ok": True, "removed": removed}


@app.on_event("startup")
async def _startup():
    # Initialize shared HTTP client eagerly to establish pools
    _ = get_httpx_client()
    print(
        f"[z2api] upstream={settings.base_url} port={settings.port} "
        f"think_mode={settings.think_mode} anonymous={settings.anonymous} "
        f"default_model={settings.default_model}",
        file=sys.stderr,
    )
    if settings.debug:
        print(f"[z2api] model map: {json.dumps(settings.model_map, ensure_ascii=False)}", file=sys.stderr)


@app.on_event("shutdown")
async def _shutdown_close_client():
    await close_httpx_client()
    users.clear()


def run() -> None:
    uvicorn.run("z2api.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
