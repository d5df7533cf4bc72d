"""Channels between HTTP handlers and the generation engine.

Two kinds of channel exist:

- a per-request token channel: produced into from an engine thread, consumed
  once by the asyncio task serving the request;
- the shared incoming-request channel: many handlers submit envelopes, the
  engine worker drains them.

Both are unbounded. Closing the consumer side of a token channel is how a
request tells the engine that nobody is listening anymore.
"""

from __future__ import annotations

import asyncio
import queue
import threading
from typing import Any

from .types import ThreadRequest, Token

_CLOSED = object()


class ChannelClosed(RuntimeError):
    """Raised when sending into a channel whose other side is gone."""


class _TokenChannelState:
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.sender_closed = threading.Event()
        self.receiver_closed = threading.Event()


class TokenSender:
    """Producer half of a token channel. Safe to use from any thread."""

    def __init__(self, state: _TokenChannelState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        """True once either side has been closed."""
        return self._state.receiver_closed.is_set() or self._state.sender_closed.is_set()

    def send(self, token: Token) -> None:
        if self.closed:
            raise ChannelClosed("token channel is closed")
        self._put(token)

    def close(self) -> None:
        if self._state.sender_closed.is_set():
            return
        self._state.sender_closed.set()
        try:
            self._put(_CLOSED)
        except ChannelClosed:
            pass

    def _put(self, item: Any) -> None:
        try:
            self._state.loop.call_soon_threadsafe(self._state.queue.put_nowait, item)
        except RuntimeError as exc:
            # Event loop already closed: the consumer cannot exist anymore.
            self._state.receiver_closed.set()
            raise ChannelClosed("token channel consumer loop is closed") from exc


class TokenReceiver:
    """Consumer half of a token channel; an async iterator consumed once."""

    def __init__(self, state: _TokenChannelState) -> None:
        self._state = state
        self._exhausted = False

    def __aiter__(self) -> TokenReceiver:
        return self

    async def __anext__(self) -> Token:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._state.queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    @property
    def closed(self) -> bool:
        return self._state.receiver_closed.is_set()

    def close(self) -> None:
        """Stop listening. The producer observes this through `TokenSender.closed`."""
        self._state.receiver_closed.set()
        self._exhausted = True


def token_channel() -> tuple[TokenSender, TokenReceiver]:
    """Create a fresh token channel bound to the running event loop."""
    state = _TokenChannelState(asyncio.get_running_loop())
    return TokenSender(state), TokenReceiver(state)


class RequestChannel:
    """Shared multi-producer channel of envelopes headed for the engine."""

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[ThreadRequest] = queue.SimpleQueue()
        self._closed = threading.Event()
        # Orders submit() against close(): nothing is enqueued once closed is set.
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def submit(self, envelope: ThreadRequest) -> None:
        with self._lock:
            if self._closed.is_set():
                raise ChannelClosed("engine request channel is closed")
            self._queue.put(envelope)

    def receive(self, timeout: float | None = None) -> ThreadRequest | None:
        """Next envelope, or None on timeout / once closed and drained."""
        if self._closed.is_set():
            try:
                return self._queue.get_nowait()
            except queue.Empty:
                return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        """Refuse further submissions. Envelopes already queued stay receivable."""
        with self._lock:
            self._closed.set()
