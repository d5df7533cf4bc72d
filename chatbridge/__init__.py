"""
chatbridge - OpenAI-compatible chat completions over a channel-driven generation engine.

The HTTP surface lives under `apps/server`; this package holds the engine-facing core:

Submodules:
    - chatbridge.engine.chat_types: Wire-level chat request/response shapes
    - chatbridge.engine.types: Generation requests and engine token events
    - chatbridge.engine.chat_engine: Normalization, dispatch and the two responders
    - chatbridge.engine.channel: Per-request token channels and the shared request channel
    - chatbridge.engine.worker: Reference engine worker driving a model adapter
"""

from chatbridge._version import __version__

__all__ = ["__version__"]
