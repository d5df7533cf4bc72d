# Model-family adapters
#
# Each adapter implements a common interface for:
#   - Loading model + tokenizer
#   - Encoding prompts and decoding generated ids
#   - Producing next-token logits, reusing model state between steps
#
# The worker uses adapters to stay model-agnostic.

from .base import BaseAdapter

__all__ = ["BaseAdapter"]
