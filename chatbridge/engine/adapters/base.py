"""Base adapter interface for model families."""

from abc import ABC, abstractmethod
from typing import Any, Sequence


class BaseAdapter(ABC):
    """
    Abstract base class for model-family adapters.

    Each supported model family implements this interface so the engine
    worker can run token-by-token generation without knowing model-specific
    details. Sampling is done by the worker, not the adapter.
    """

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load model and tokenizer from the given path or HF repo.

        Args:
            model_path: Local path or HF Hub model identifier.
            **kwargs: Model-specific loading options (dtype, device, etc.).
        """
        pass

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        """Tokenize `text` without adding special tokens."""
        pass

    @abstractmethod
    def decode(self, token_ids: Sequence[int]) -> str:
        """Detokenize generated ids back into text."""
        pass

    @abstractmethod
    def forward(self, input_ids: Sequence[int], state: Any | None) -> tuple[Any, Any]:
        """
        Run the model over `input_ids`, continuing from `state`.

        Args:
            input_ids: The full prompt on the first call (state is None), then
                one freshly sampled token per call.
            state: Opaque state returned by the previous call.

        Returns:
            (logits for the next token as a 1-D tensor, new state)
        """
        pass

    @property
    @abstractmethod
    def eos_token_id(self) -> int | None:
        """End-of-sequence token id, or None if the model has none."""
        pass

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_path', 'dtype', 'device', etc.
        """
        pass

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
