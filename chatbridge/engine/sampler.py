"""Next-token sampling over model logits."""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping

from .types import SamplerConfig

if TYPE_CHECKING:
    import torch


def apply_penalties(
    logits: torch.Tensor,
    occurrences: Mapping[int, int],
    *,
    presence_penalty: float,
    frequency_penalty: float,
) -> torch.Tensor:
    """Penalize tokens that already occurred: presence once, frequency per occurrence."""
    import torch

    if not occurrences or (presence_penalty == 0 and frequency_penalty == 0):
        return logits

    logits = logits.clone()
    ids = torch.tensor(list(occurrences.keys()), dtype=torch.long, device=logits.device)
    counts = torch.tensor(list(occurrences.values()), dtype=logits.dtype, device=logits.device)
    logits[ids] -= presence_penalty + frequency_penalty * counts
    return logits


def top_p_filter(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """Zero out the tail of the distribution outside the top-p nucleus and renormalize."""
    import torch

    if top_p >= 1.0:
        return probs

    sorted_probs, sorted_ids = torch.sort(probs, descending=True)
    cumulative = torch.cumsum(sorted_probs, dim=-1)
    # Keep every token whose preceding mass is still below top_p (always at least one).
    keep = (cumulative - sorted_probs) < top_p
    keep[0] = True
    sorted_probs = torch.where(keep, sorted_probs, torch.zeros_like(sorted_probs))

    filtered = torch.zeros_like(probs)
    filtered.scatter_(-1, sorted_ids, sorted_probs)
    return filtered / filtered.sum()


def sample(logits: torch.Tensor, config: SamplerConfig, occurrences: Mapping[int, int]) -> int:
    """Pick the next token id from 1-D `logits` according to `config`."""
    import torch

    # fp32 avoids overflow with fp16 logits at low temperature.
    logits = logits.float().reshape(-1)
    logits = apply_penalties(
        logits,
        occurrences,
        presence_penalty=config.presence_penalty,
        frequency_penalty=config.frequency_penalty,
    )

    if config.temperature <= 0:
        return int(torch.argmax(logits).item())

    probs = torch.softmax(logits / float(config.temperature), dim=-1)
    probs = top_p_filter(probs, config.top_p)
    return int(torch.multinomial(probs, 1).item())
