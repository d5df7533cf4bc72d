"""FastAPI app for OpenAI-style Chat Completions.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
Generation is delegated to the engine behind the shared request channel
(`chatbridge/engine`); this module only parses requests and frames responses.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from chatbridge.engine.channel import RequestChannel, TokenReceiver
from chatbridge.engine.chat_engine import (
    DONE_MARKER,
    aggregate_chat,
    astream_chunks,
    build_generate_request,
    dispatch,
)
from chatbridge.engine.chat_types import ChatRecord, ChatRequest, ChunkChatResponse, OptionArray, Role
from chatbridge.engine.types import MAX_TOKENS

logger = logging.getLogger(__name__)


def create_app(
    *,
    requests: RequestChannel,
    model_id: str,
    max_tokens: int = MAX_TOKENS,
) -> FastAPI:
    app = FastAPI(title="chatbridge", version="0.1.0")

    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "chatbridge",
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Chat Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/chat/completions")
    @app.post("/chat/completions")
    async def chat_completions(request: Request) -> Any:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc

        chat_req = _parse_chat_request(payload)
        generate_req = build_generate_request(chat_req, max_tokens=max_tokens)

        # The requested model name is echoed back, never used for routing.
        response_model = payload.get("model")
        if not isinstance(response_model, str) or not response_model:
            response_model = model_id

        created = int(time.time())
        chatcmpl_id = f"chatcmpl-{uuid.uuid4().hex}"

        receiver = dispatch(requests, generate_req)

        if chat_req.stream:
            event_iter = _stream_chat_completions(
                receiver=receiver,
                model_id=response_model,
                created=created,
                chatcmpl_id=chatcmpl_id,
                request=request,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        try:
            response = await _run_with_disconnect_cancellation(request, aggregate_chat(receiver))
        finally:
            receiver.close()

        body = response.to_dict()
        return JSONResponse(
            {
                "id": chatcmpl_id,
                "object": body["object"],
                "created": created,
                "model": response_model,
                "choices": body["choices"],
                "usage": body["usage"],
            }
        )

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _sse_error(message: str) -> str:
    error = {
        "error": {
            "message": message,
            "type": "server_error",
            "param": None,
            "code": None,
        }
    }
    return f"event: error\ndata: {json.dumps(error)}\n\n"


def _encode_event(
    event: ChunkChatResponse | str,
    *,
    model_id: str,
    created: int,
    chatcmpl_id: str,
) -> bytes:
    if isinstance(event, str):
        return _sse(DONE_MARKER).encode("utf-8")

    body = event.to_dict()
    data = json.dumps(
        {
            "id": chatcmpl_id,
            "object": body["object"],
            "created": created,
            "model": model_id,
            "choices": body["choices"],
        },
        ensure_ascii=False,
    )
    return _sse(data).encode("utf-8")


async def _stream_chat_completions(
    *,
    receiver: TokenReceiver,
    model_id: str,
    created: int,
    chatcmpl_id: str,
    request: Request,
) -> AsyncIterator[bytes]:
    try:
        async for event in astream_chunks(receiver):
            # If the client disconnects mid-stream, stop consuming promptly.
            # Closing the receiver below tells the engine to stop generating.
            if await request.is_disconnected():
                break

            try:
                frame = _encode_event(event, model_id=model_id, created=created, chatcmpl_id=chatcmpl_id)
            except (TypeError, ValueError) as exc:
                logger.warning("Failed to encode stream event %r: %s", event, exc)
                yield _sse_error(f"Failed to encode event: {exc}").encode("utf-8")
                continue
            yield frame
    finally:
        receiver.close()


def _parse_chat_request(payload: Any) -> ChatRequest:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    kwargs: dict[str, Any] = {}

    raw_messages = payload.get("messages")
    if raw_messages is not None:
        if not isinstance(raw_messages, (list, dict)):
            raise HTTPException(status_code=400, detail="'messages' must be a message object or a list of them.")
        kwargs["messages"] = OptionArray.of(raw_messages, _parse_record)

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.")
        if max_tokens < 0:
            raise HTTPException(status_code=400, detail="'max_tokens' must be >= 0.")
        kwargs["max_tokens"] = max_tokens

    stop = payload.get("stop")
    if stop is not None:
        kwargs["stop"] = OptionArray.of(stop, _parse_stop)

    for name in ("temperature", "top_p", "presence_penalty", "frequency_penalty"):
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a number.")
        kwargs[name] = float(value)

    stream = payload.get("stream")
    if stream is not None:
        if not isinstance(stream, bool):
            raise HTTPException(status_code=400, detail="'stream' must be a boolean.")
        kwargs["stream"] = stream

    return ChatRequest(**kwargs)


def _parse_record(msg: Any) -> ChatRecord:
    if not isinstance(msg, dict):
        raise HTTPException(status_code=400, detail="Each message must be an object.")

    role = Role.USER
    raw_role = msg.get("role")
    if raw_role is not None:
        if not isinstance(raw_role, str):
            raise HTTPException(status_code=400, detail=f"Invalid message role: {raw_role!r}.")
        try:
            role = Role.parse(raw_role)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return ChatRecord(role=role, content=_coerce_content(msg.get("content")))


def _parse_stop(value: Any) -> str:
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail="'stop' must be a string or list of strings.")
    return value


def _coerce_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    # Minimal support for OpenAI "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise HTTPException(status_code=400, detail="Unsupported message content type.")
