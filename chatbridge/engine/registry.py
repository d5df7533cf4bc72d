"""Model family registry.

`apps/server/main.py` resolves `--family` here; family names are matched
case-insensitively.
"""

from typing import Type

from .adapters.base import BaseAdapter
from .adapters.huggingface import TransformersAdapter

_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "transformers": TransformersAdapter,
}


def _family_key(model_family: str) -> str:
    return model_family.strip().lower()


def get_adapter(model_family: str) -> BaseAdapter:
    """
    Build a fresh, unloaded adapter for `model_family`.

    Raises:
        ValueError: If no adapter is registered under that name.
    """
    adapter_cls = _ADAPTER_REGISTRY.get(_family_key(model_family))
    if adapter_cls is None:
        available = ", ".join(sorted(_ADAPTER_REGISTRY))
        raise ValueError(f"Unknown model family: {model_family!r}. Available: {available}")
    return adapter_cls()


def register_adapter(model_family: str, adapter_cls: Type[BaseAdapter], *, replace: bool = False) -> None:
    """
    Make `adapter_cls` available under `model_family`.

    Args:
        model_family: Family name as passed to `--family`.
        adapter_cls: A `BaseAdapter` subclass; instantiated with no arguments.
        replace: Allow overriding an existing registration.

    Raises:
        TypeError: If `adapter_cls` is not a `BaseAdapter` subclass.
        ValueError: If the family is empty or already registered and `replace` is False.
    """
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, BaseAdapter)):
        raise TypeError(f"Adapter for {model_family!r} must subclass BaseAdapter, got {adapter_cls!r}")
    key = _family_key(model_family)
    if not key:
        raise ValueError("model_family must be non-empty")
    if key in _ADAPTER_REGISTRY and not replace:
        raise ValueError(f"Model family {key!r} is already registered")
    _ADAPTER_REGISTRY[key] = adapter_cls


def list_model_families() -> list[str]:
    return sorted(_ADAPTER_REGISTRY)
