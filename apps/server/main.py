"""chatbridge server entrypoint (FastAPI + OpenAI-style Chat Completions).

Example:
    python -m apps.server.main --model Qwen/Qwen2.5-0.5B-Instruct --host 0.0.0.0 --port 65530
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any

from apps.server.app import create_app
from chatbridge.engine.channel import RequestChannel
from chatbridge.engine.registry import get_adapter, list_model_families
from chatbridge.engine.types import MAX_TOKENS
from chatbridge.engine.worker import EngineConfig, EngineWorker


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="chatbridge server")
    p.add_argument("--model", required=True, help="Model path or HF repo id")
    p.add_argument(
        "--family",
        default="transformers",
        choices=list_model_families(),
        help="Model family adapter (default: transformers)",
    )
    p.add_argument("--model-id", default=None, help="Model id reported by the API (default: basename of --model)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=65530, help="Bind port (default: 65530)")

    p.add_argument("--device", default="cpu", help="Torch device (default: cpu)")
    p.add_argument("--dtype", default="float32", help="Torch dtype: float16|bfloat16|float32 (default: float32)")
    p.add_argument(
        "--max-tokens",
        type=int,
        default=MAX_TOKENS,
        help=f"Ceiling on max_tokens for any request (default: {MAX_TOKENS})",
    )
    p.add_argument(
        "--stop",
        action="append",
        default=[],
        help="Extra stop sequence applied to every request (repeatable)",
    )
    p.add_argument("--trust-remote-code", action="store_true")
    p.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    p.add_argument("--reload", action="store_true", help="Enable uvicorn reload (dev only)")
    return p.parse_args()


def _dtype_from_string(dtype: str) -> Any:
    try:
        import torch
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("torch is required to run the server.") from exc

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.max_tokens <= 0:
        raise ValueError("--max-tokens must be > 0")

    adapter = get_adapter(args.family)
    print(
        "[server] loading model... "
        f"model={args.model!r} family={args.family!r} device={args.device!r} dtype={args.dtype!r}",
        flush=True,
    )
    adapter.load(
        args.model,
        device=args.device,
        dtype=_dtype_from_string(args.dtype),
        trust_remote_code=args.trust_remote_code,
    )
    print("[server] model loaded", flush=True)

    requests = RequestChannel()
    worker = EngineWorker(
        adapter,
        requests,
        config=EngineConfig(max_tokens=args.max_tokens, stop=tuple(args.stop)),
    )
    worker.start()

    model_id = args.model_id or os.path.basename(args.model.rstrip("/")) or "chatbridge"
    app = create_app(requests=requests, model_id=model_id, max_tokens=args.max_tokens)

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=args.log_level,
        )
    finally:
        print("[server] stopping engine worker", flush=True)
        worker.stop(timeout=5.0)
        adapter.unload()


if __name__ == "__main__":
    main()
