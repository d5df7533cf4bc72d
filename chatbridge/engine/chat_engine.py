"""Chat request normalization and token-stream assembly.

This module provides the engine-facing core of the adapter:
- request normalization -> single linear prompt
- dispatch onto the shared engine channel
- aggregation of a token stream into one completion
- per-event mapping of a token stream into streaming chunks

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator

from .channel import ChannelClosed, RequestChannel, TokenReceiver, token_channel
from .chat_types import (
    ChatChoice,
    ChatRecord,
    ChatRequest,
    ChatResponse,
    ChunkChatChoice,
    ChunkChatRecord,
    ChunkChatResponse,
    Role,
)
from .types import (
    MAX_TOKENS,
    CutOff,
    EndOfText,
    FinishReason,
    GenerateRequest,
    PromptTokenCount,
    RequestKind,
    SamplerConfig,
    Stop,
    ThreadRequest,
    Token,
    TokenCounter,
    TokenText,
)

logger = logging.getLogger(__name__)

# Payload of the final streaming event.
DONE_MARKER = "[DONE]"


def build_generate_request(request: ChatRequest, *, max_tokens: int = MAX_TOKENS) -> GenerateRequest:
    """Render a conversation into a single prompt ending with an assistant cue.

    Each message becomes ``"<Role>: <content>"``; messages are separated by a
    blank line and the prompt ends with ``"\\n\\nAssistant:"`` so the model
    continues the assistant's turn.
    """
    prompt = "\n\n".join(
        f"{str(record.role)}: {record.content.strip()}" for record in request.messages.to_list()
    )
    prompt += f"\n\n{str(Role.ASSISTANT)}:"

    return GenerateRequest(
        prompt=prompt,
        max_tokens=min(request.max_tokens, max_tokens),
        stop=tuple(request.stop.to_list()),
        sampler=SamplerConfig(
            temperature=request.temperature,
            top_p=request.top_p,
            presence_penalty=request.presence_penalty,
            frequency_penalty=request.frequency_penalty,
        ),
        occurrences={},
    )


def dispatch(requests: RequestChannel, request: GenerateRequest) -> TokenReceiver:
    """Submit a chat generation and return its private token stream.

    Submission is fire-and-forget: when the engine channel is closed nothing is
    raised, the returned stream is simply empty.
    """
    token_sender, token_receiver = token_channel()
    try:
        requests.submit(ThreadRequest(kind=RequestKind.CHAT, request=request, token_sender=token_sender))
    except ChannelClosed as exc:
        # TODO: surface engine unavailability as a 503 instead of an empty completion.
        logger.warning("Engine request channel unavailable, returning empty stream: %s", exc)
        token_sender.close()
    return token_receiver


async def aggregate_chat(tokens: AsyncIterable[Token]) -> ChatResponse:
    """Drain a token stream into a single chat completion."""
    counter = TokenCounter()
    finish_reason = FinishReason.NULL
    text_parts: list[str] = []

    async for token in tokens:
        if isinstance(token, PromptTokenCount):
            counter.prompt_tokens = token.count
        elif isinstance(token, TokenText):
            text_parts.append(token.text)
            counter.completion_tokens += 1
        elif isinstance(token, Stop):
            finish_reason = FinishReason.STOP
            break
        elif isinstance(token, (CutOff, EndOfText)):
            finish_reason = FinishReason.LENGTH
            break
        else:
            raise TypeError(f"Unexpected token event: {token!r}")

    counter.total_tokens = counter.prompt_tokens + counter.completion_tokens

    return ChatResponse(
        choices=[
            ChatChoice(
                message=ChatRecord(role=Role.ASSISTANT, content="".join(text_parts)),
                index=0,
                finish_reason=finish_reason,
            )
        ],
        counter=counter,
    )


def chunk_for_token(token: Token) -> ChunkChatResponse | None:
    """Map one token event to its streaming chunk; None marks the end of text."""
    if isinstance(token, PromptTokenCount):
        choice = ChunkChatChoice(delta=ChunkChatRecord(role=Role.ASSISTANT))
    elif isinstance(token, TokenText):
        choice = ChunkChatChoice(delta=ChunkChatRecord(content=token.text))
    elif isinstance(token, CutOff):
        choice = ChunkChatChoice(finish_reason=FinishReason.LENGTH)
    elif isinstance(token, Stop):
        choice = ChunkChatChoice(finish_reason=FinishReason.STOP)
    elif isinstance(token, EndOfText):
        return None
    else:
        raise TypeError(f"Unexpected token event: {token!r}")
    return ChunkChatResponse(choices=[choice])


async def astream_chunks(tokens: AsyncIterable[Token]) -> AsyncIterator[ChunkChatResponse | str]:
    """Forward each token event as it arrives.

    Yields a `ChunkChatResponse` per event and `DONE_MARKER` for the end of
    text, after which the stream ends.
    """
    async for token in tokens:
        chunk = chunk_for_token(token)
        if chunk is None:
            yield DONE_MARKER
            return
        yield chunk
