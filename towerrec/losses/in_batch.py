from __future__ import annotations

import torch
import torch.nn.functional as F

from towerrec.errors import EmptyBatchError


def in_batch_softmax_loss(
    user_vecs: torch.Tensor,
    item_vecs: torch.Tensor,
    *,
    l2_reg: float = 0.0,
) -> torch.Tensor:
    """Softmax cross-entropy over in-batch dot products.

    Row ``k`` of ``user_vecs @ item_vecs.T`` has its positive at column ``k``;
    every other item in the batch is a negative for it, including duplicates of
    the positive item.

    Args:
        user_vecs: User tower outputs, shape (B, D).
        item_vecs: Item tower outputs for the paired items, shape (B, D).
        l2_reg: If > 0, adds ``l2_reg * (sum(U**2) + sum(V**2))``.

    Returns:
        Scalar tensor with the batch-mean loss.
    """
    if user_vecs.ndim != 2 or item_vecs.ndim != 2:
        raise ValueError("user_vecs and item_vecs must be 2-D tensors [batch, dim]")
    if user_vecs.shape != item_vecs.shape:
        raise ValueError(
            f"in_batch_softmax_loss expects identical shapes; "
            f"got {tuple(user_vecs.shape)} vs {tuple(item_vecs.shape)}"
        )
    if user_vecs.size(0) == 0:
        raise EmptyBatchError("in_batch_softmax_loss needs at least one pair")

    logits = user_vecs @ item_vecs.T  # (B, B)
    labels = torch.arange(logits.size(0), device=logits.device)
    loss = F.cross_entropy(logits, labels)
    if l2_reg > 0:
        loss = loss + l2_reg * (user_vecs.pow(2).sum() + item_vecs.pow(2).sum())
    return loss
