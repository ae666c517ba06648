from __future__ import annotations

import math
from typing import Sequence

import torch
import torch.nn as nn

from towerrec.errors import ConfigurationError, IndexOutOfRangeError


def as_index_tensor(indices, device: torch.device | str | None = None) -> torch.Tensor:
    """Coerce a sequence/array/tensor of ints to a 1-D long tensor."""
    idx = torch.as_tensor(indices, device=device)
    # an empty list comes through as float32; there is nothing to truncate
    if idx.numel() > 0 and (idx.is_floating_point() or idx.is_complex() or idx.dtype == torch.bool):
        raise ValueError(f"indices must be integers, got dtype {idx.dtype}")
    idx = idx.to(dtype=torch.long)
    if idx.dim() == 0:
        idx = idx.unsqueeze(0)
    if idx.dim() != 1:
        raise ValueError(f"indices must be 1-D, got shape {tuple(idx.shape)}")
    return idx


class EmbeddingTable(nn.Module):
    """Learnable [count, dim] lookup table with bounds-checked gathers.

    Gradients are sparse, so an optimizer step only touches the rows that were
    gathered in the batch.
    """

    def __init__(self, count: int, dim: int, *, init_std: float = 0.05, name: str = "embedding") -> None:
        super().__init__()
        if count <= 0 or dim <= 0:
            raise ConfigurationError(f"{name} table needs count > 0 and dim > 0 (got {count}, {dim})")
        self.count = int(count)
        self.dim = int(dim)
        self.name = name
        self.emb = nn.Embedding(self.count, self.dim, sparse=True)
        nn.init.normal_(self.emb.weight, mean=0.0, std=float(init_std))

    @property
    def weight(self) -> nn.Parameter:
        return self.emb.weight

    def check_indices(self, idx: torch.Tensor) -> None:
        if idx.numel() == 0:
            return
        lo = int(idx.min().item())
        hi = int(idx.max().item())
        if lo < 0 or hi >= self.count:
            raise IndexOutOfRangeError(
                f"{self.name} index out of range [0, {self.count}): got min={lo}, max={hi}"
            )

    def lookup(self, indices) -> torch.Tensor:
        idx = as_index_tensor(indices, device=self.weight.device)
        self.check_indices(idx)
        return self.emb(idx)

    def forward(self, indices) -> torch.Tensor:
        return self.lookup(indices)


class Tower(nn.Module):
    """Embedding (+ optional side features) -> shared output space.

    ``hidden=()`` is shallow mode: the tower is the identity on the embedding and
    side features are ignored. Otherwise every layer is affine followed by ReLU,
    except the last which stays affine so scores can go negative.

    When ``feat_dim > 0`` and ``forward`` is called without a feature batch, the
    feature columns are zero-filled, i.e. only the embedding reaches the first
    layer. A deep tower with ``feat_dim == 0`` rejects a feature batch.
    """

    def __init__(self, embed_dim: int, hidden: Sequence[int] = (), feat_dim: int = 0) -> None:
        super().__init__()
        hidden = tuple(int(h) for h in hidden)
        if any(h <= 0 for h in hidden):
            raise ConfigurationError(f"hidden widths must be positive, got {hidden}")
        if feat_dim < 0:
            raise ConfigurationError(f"feat_dim must be >= 0, got {feat_dim}")

        self.embed_dim = int(embed_dim)
        self.feat_dim = int(feat_dim)
        self.hidden = hidden
        self.layers = nn.ModuleList()

        prev = self.embed_dim + self.feat_dim if hidden else self.embed_dim
        for width in hidden:
            layer = nn.Linear(prev, width)
            nn.init.normal_(layer.weight, mean=0.0, std=math.sqrt(2.0 / (prev + width)))
            nn.init.zeros_(layer.bias)
            self.layers.append(layer)
            prev = width
        self.out_dim = prev

    @property
    def is_shallow(self) -> bool:
        return len(self.layers) == 0

    def forward(self, emb: torch.Tensor, feats: torch.Tensor | None = None) -> torch.Tensor:
        if emb.dim() != 2 or emb.size(1) != self.embed_dim:
            raise ValueError(f"expected embeddings of shape [B, {self.embed_dim}], got {tuple(emb.shape)}")
        if self.is_shallow:
            return emb
        if feats is not None and self.feat_dim == 0:
            raise ValueError("tower declares no side features (feat_dim=0) but a feature batch was given")

        x = emb
        if self.feat_dim > 0:
            if feats is None:
                feats = emb.new_zeros(emb.size(0), self.feat_dim)
            elif feats.dim() != 2 or feats.shape != (emb.size(0), self.feat_dim):
                raise ValueError(
                    f"expected features of shape [{emb.size(0)}, {self.feat_dim}], got {tuple(feats.shape)}"
                )
            x = torch.cat([x, feats.to(device=emb.device, dtype=emb.dtype)], dim=-1)

        last = len(self.layers) - 1
        for k, layer in enumerate(self.layers):
            x = layer(x)
            if k < last:
                x = torch.relu(x)
        return x
