"""Reference generation engine worker.

A single background thread drains the shared request channel and, for each
envelope, runs the model adapter token by token, pushing Token events into the
envelope's private token channel. The adapter is not thread-safe, so requests
are served one at a time (single-flight).
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from .channel import ChannelClosed, RequestChannel, TokenSender
from .types import (
    MAX_TOKENS,
    CutOff,
    EndOfText,
    GenerateRequest,
    PromptTokenCount,
    RequestKind,
    SamplerConfig,
    Stop,
    ThreadRequest,
    Token,
    TokenText,
)

logger = logging.getLogger(__name__)

SampleFn = Callable[[Any, SamplerConfig, Mapping[int, int]], int]


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    max_tokens: int = MAX_TOKENS
    stop: tuple[str, ...] = ()
    poll_interval_s: float = 0.1


class _StopSequenceFilter:
    """Incremental stop-sequence matcher over generated text.

    Text that could still turn out to be the start of a stop sequence is held
    back until the next piece disambiguates it.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stop_sequences = [s for s in stop_sequences if s]
        self._buffer = ""
        self.stopped = False

    def feed(self, text: str) -> str:
        """Return the text that is safe to emit after appending `text`."""
        if self.stopped:
            return ""
        self._buffer += text

        idx = self._find_earliest_stop(self._buffer)
        if idx is not None:
            before = self._buffer[:idx]
            self._buffer = ""
            self.stopped = True
            return before

        keep = self._held_tail_len(self._buffer)
        safe_end = len(self._buffer) - keep
        safe = self._buffer[:safe_end]
        self._buffer = self._buffer[safe_end:]
        return safe

    def flush(self) -> str:
        """Release whatever is still held back at end of generation."""
        if self.stopped:
            return ""
        remaining = self._buffer
        self._buffer = ""
        return remaining

    def _find_earliest_stop(self, text: str) -> int | None:
        earliest: int | None = None
        for s in self._stop_sequences:
            idx = text.find(s)
            if idx == -1:
                continue
            if earliest is None or idx < earliest:
                earliest = idx
        return earliest

    def _held_tail_len(self, text: str) -> int:
        longest = 0
        for s in self._stop_sequences:
            for n in range(min(len(s) - 1, len(text)), longest, -1):
                if text.endswith(s[:n]):
                    longest = n
                    break
        return longest


class EngineWorker:
    """Consumes generation envelopes and produces token streams.

    Args:
        adapter: A loaded model adapter (see `adapters.base.BaseAdapter`).
        requests: The shared incoming-request channel.
        config: Engine-wide limits and extra stop sequences.
        sample_fn: Picks the next token id from adapter logits. Defaults to
            `chatbridge.engine.sampler.sample` (requires torch).
    """

    def __init__(
        self,
        adapter: Any,
        requests: RequestChannel,
        *,
        config: EngineConfig | None = None,
        sample_fn: SampleFn | None = None,
    ) -> None:
        if sample_fn is None:
            from .sampler import sample as sample_fn

        self._adapter = adapter
        self._requests = requests
        self._config = config or EngineConfig()
        self._sample = sample_fn
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def adapter(self) -> Any:
        return self._adapter

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        if self._requests.closed:
            raise RuntimeError("Request channel is closed; a stopped worker cannot be restarted.")
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"chatbridge-worker-{uuid.uuid4().hex[:8]}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Close the request channel and wait for the worker thread to exit.

        Stopping is terminal: the shared channel stays closed, so handlers see
        an unavailable engine and `start()` refuses to run again.
        """
        self._requests.close()
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._shutdown.is_set():
            envelope = self._requests.receive(timeout=self._config.poll_interval_s)
            if envelope is None:
                if self._requests.closed:
                    break
                continue
            self._handle(envelope)

        # Anything still queued at shutdown gets an empty, closed stream.
        while True:
            envelope = self._requests.receive(timeout=0)
            if envelope is None:
                break
            envelope.token_sender.close()

    def _handle(self, envelope: ThreadRequest) -> None:
        sender = envelope.token_sender
        try:
            if envelope.kind is RequestKind.CHAT:
                self._generate(envelope.request, sender)
            else:
                logger.warning("Dropping request of unsupported kind %s", envelope.kind)
        except ChannelClosed:
            logger.debug("Token receiver closed; generation cancelled")
        except Exception:
            logger.exception("Generation failed")
        finally:
            sender.close()

    def _generate(self, request: GenerateRequest, sender: TokenSender) -> None:
        adapter = self._adapter
        prompt_ids = list(adapter.encode(request.prompt))
        sender.send(PromptTokenCount(len(prompt_ids)))
        logger.debug("Generating: prompt_tokens=%d max_tokens=%d", len(prompt_ids), request.max_tokens)

        stop_filter = _StopSequenceFilter([*request.stop, *self._config.stop])
        eos_token_id = getattr(adapter, "eos_token_id", None)
        max_tokens = min(request.max_tokens, self._config.max_tokens)

        generated: list[int] = []
        decoded = ""
        finished: Token = CutOff()
        input_ids = prompt_ids
        state: Any = None

        while len(generated) < max_tokens:
            if sender.closed:
                logger.debug("Token receiver closed after %d tokens", len(generated))
                return

            logits, state = adapter.forward(input_ids, state)
            token_id = int(self._sample(logits, request.sampler, request.occurrences))
            if eos_token_id is not None and token_id == eos_token_id:
                finished = Stop()
                break

            request.occurrences[token_id] = request.occurrences.get(token_id, 0) + 1
            generated.append(token_id)
            input_ids = [token_id]

            text = adapter.decode(generated)
            if text.endswith("\ufffd"):
                # Incomplete multi-byte sequence; wait for the next token.
                continue
            piece = text[len(decoded) :]
            decoded = text

            out = stop_filter.feed(piece)
            if out:
                sender.send(TokenText(out))
            if stop_filter.stopped:
                finished = Stop()
                break

        if not stop_filter.stopped:
            tail = adapter.decode(generated)[len(decoded) :] if generated else ""
            out = stop_filter.feed(tail) if tail else ""
            if not stop_filter.stopped:
                out += stop_filter.flush()
            else:
                finished = Stop()
            if out:
                sender.send(TokenText(out))

        logger.debug("Generation finished: completion_tokens=%d reason=%s", len(generated), type(finished).__name__)
        sender.send(finished)
        sender.send(EndOfText())
