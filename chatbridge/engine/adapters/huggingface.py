"""Adapter for Hugging Face causal language models."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from .base import BaseAdapter

if TYPE_CHECKING:
    import torch


class TransformersAdapter(BaseAdapter):
    """
    Adapter for any `AutoModelForCausalLM` checkpoint.

    Model state between steps is the `past_key_values` cache returned by the
    model, so each decode step only feeds the newly sampled token.

    Thread Safety:
        Not thread-safe. The engine worker calls it from a single thread.
    """

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None

    @property
    def model(self):
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def device(self) -> str:
        return self._device

    @property
    def eos_token_id(self) -> int | None:
        if self._tokenizer is None:
            return None
        return self._tokenizer.eos_token_id

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "model_path": self._model_path,
            "device": self._device,
            "dtype": str(self._dtype),
            "loaded": self._model is not None,
        }

    def load(self, model_path: str, **kwargs) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            device: Device to load the model on (default: "cpu").
            dtype: Torch dtype (default: torch.float32).
            trust_remote_code: Passed to from_pretrained() (default: False).
            **kwargs: Additional kwargs passed to AutoModelForCausalLM.from_pretrained().
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_path = model_path
        self._device = kwargs.pop("device", "cpu")
        self._dtype = kwargs.pop("dtype", torch.float32)
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        self._tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        self._model = AutoModelForCausalLM.from_pretrained(
            model_path,
            torch_dtype=self._dtype,
            trust_remote_code=trust_remote_code,
            **kwargs,
        )
        self._model.to(self._device)
        self._model.eval()

    def unload(self) -> None:
        """Unload the model and free GPU memory."""
        import gc
        import torch

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def encode(self, text: str) -> list[int]:
        self._ensure_loaded()
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def decode(self, token_ids: Sequence[int]) -> str:
        self._ensure_loaded()
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)

    def forward(self, input_ids: Sequence[int], state: Any | None) -> tuple[torch.Tensor, Any]:
        import torch

        self._ensure_loaded()
        ids = torch.tensor([list(input_ids)], dtype=torch.long, device=self._device)
        with torch.inference_mode():
            outputs = self._model(input_ids=ids, past_key_values=state, use_cache=True)
        return outputs.logits[0, -1, :], outputs.past_key_values

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")
