from __future__ import annotations

from typing import Any, Iterator

import numpy as np
import torch
import torch.nn as nn

from towerrec.errors import ConfigurationError, StaleIndexError
from towerrec.models.towers import EmbeddingTable, Tower, as_index_tensor


def _as_feature_matrix(feats, rows: int, name: str) -> torch.Tensor:
    if not torch.is_tensor(feats):
        feats = torch.as_tensor(np.asarray(feats), dtype=torch.float32)
    if feats.dim() != 2:
        raise ConfigurationError(f"{name} must be rank-2 [n, feat_dim], got shape {tuple(feats.shape)}")
    if feats.size(0) != rows:
        raise ConfigurationError(f"{name} rows ({feats.size(0)}) != table count ({rows})")
    return feats.float()


class TwoTower(nn.Module):
    """Two-tower retrieval model: ID embeddings passed through per-side towers.

    Scores are plain dot products between user and item tower outputs. The item
    tower output for the whole catalogue is cached by ``build_item_index`` and is
    invalidated by any parameter update (``mark_updated``).
    """

    def __init__(
        self,
        n_users: int,
        n_items: int,
        embed_dim: int = 32,
        user_layers: tuple[int, ...] = (),
        item_layers: tuple[int, ...] = (),
        *,
        user_feat_dim: int = 0,
        item_feat_dim: int = 0,
        user_features: torch.Tensor | np.ndarray | None = None,
        item_features: torch.Tensor | np.ndarray | None = None,
        init_std: float = 0.05,
    ) -> None:
        super().__init__()
        if n_users <= 0 or n_items <= 0:
            raise ConfigurationError("n_users and n_items must be > 0 for TwoTower")
        if embed_dim <= 0:
            raise ConfigurationError(f"embed_dim must be > 0, got {embed_dim}")

        self.n_users = int(n_users)
        self.n_items = int(n_items)
        self.embed_dim = int(embed_dim)
        self.init_std = float(init_std)

        if user_features is not None:
            user_features = _as_feature_matrix(user_features, self.n_users, "user_features")
            if user_feat_dim and user_feat_dim != user_features.size(1):
                raise ConfigurationError(
                    f"user_feat_dim={user_feat_dim} does not match user_features width {user_features.size(1)}"
                )
            user_feat_dim = user_features.size(1)
        if item_features is not None:
            item_features = _as_feature_matrix(item_features, self.n_items, "item_features")
            if item_feat_dim and item_feat_dim != item_features.size(1):
                raise ConfigurationError(
                    f"item_feat_dim={item_feat_dim} does not match item_features width {item_features.size(1)}"
                )
            item_feat_dim = item_features.size(1)

        self.register_buffer("user_features", user_features)
        self.register_buffer("item_features", item_features)

        self.user_emb = EmbeddingTable(self.n_users, self.embed_dim, init_std=init_std, name="user")
        self.item_emb = EmbeddingTable(self.n_items, self.embed_dim, init_std=init_std, name="item")

        self.user_tower = Tower(self.embed_dim, tuple(user_layers), feat_dim=int(user_feat_dim))
        self.item_tower = Tower(self.embed_dim, tuple(item_layers), feat_dim=int(item_feat_dim))
        if self.user_tower.out_dim != self.item_tower.out_dim:
            raise ConfigurationError(
                f"TwoTower user/item tower output dims must match "
                f"(got {self.user_tower.out_dim} vs {self.item_tower.out_dim})."
            )
        self.latent_dim = self.user_tower.out_dim

        self._version = 0
        self._index: torch.Tensor | None = None
        self._index_version = -1

    # --------- Config ----------
    @property
    def is_shallow(self) -> bool:
        return self.user_tower.is_shallow and self.item_tower.is_shallow

    def model_kwargs(self) -> dict[str, Any]:
        """Constructor arguments needed to rebuild this model from a state dict."""
        return {
            "n_users": self.n_users,
            "n_items": self.n_items,
            "embed_dim": self.embed_dim,
            "user_layers": list(self.user_tower.hidden),
            "item_layers": list(self.item_tower.hidden),
            "user_feat_dim": self.user_tower.feat_dim,
            "item_feat_dim": self.item_tower.feat_dim,
            "has_user_features": self.user_features is not None,
            "has_item_features": self.item_features is not None,
            "init_std": self.init_std,
        }

    @classmethod
    def from_kwargs(cls, kwargs: dict[str, Any]) -> "TwoTower":
        kw = dict(kwargs)
        has_uf = kw.pop("has_user_features", False)
        has_if = kw.pop("has_item_features", False)
        kw["user_layers"] = tuple(kw.get("user_layers", ()))
        kw["item_layers"] = tuple(kw.get("item_layers", ()))
        if has_uf:
            kw["user_features"] = torch.zeros(kw["n_users"], kw["user_feat_dim"])
        if has_if:
            kw["item_features"] = torch.zeros(kw["n_items"], kw["item_feat_dim"])
        return cls(**kw)

    def embedding_parameters(self) -> Iterator[nn.Parameter]:
        yield self.user_emb.weight
        yield self.item_emb.weight

    def tower_parameters(self) -> Iterator[nn.Parameter]:
        yield from self.user_tower.parameters()
        yield from self.item_tower.parameters()

    # --------- Encoders ----------
    def encode_users(self, users, feats: torch.Tensor | None = None) -> torch.Tensor:
        users = as_index_tensor(users, device=self.user_emb.weight.device)
        z = self.user_emb.lookup(users)
        if feats is None and self.user_features is not None:
            feats = self.user_features.index_select(0, users)
        return self.user_tower(z, feats)

    def encode_items(self, items, feats: torch.Tensor | None = None) -> torch.Tensor:
        items = as_index_tensor(items, device=self.item_emb.weight.device)
        z = self.item_emb.lookup(items)
        if feats is None and self.item_features is not None:
            feats = self.item_features.index_select(0, items)
        return self.item_tower(z, feats)

    def forward(self, users, items) -> torch.Tensor:
        """Pairwise dot-product scores for aligned (user, item) batches."""
        u_vec = self.encode_users(users)
        i_vec = self.encode_items(items)
        return torch.sum(u_vec * i_vec, dim=-1)

    # --------- Item index ----------
    def mark_updated(self) -> None:
        """Record a parameter mutation; any built item index becomes stale."""
        self._version += 1

    @property
    def index_is_fresh(self) -> bool:
        return self._index is not None and self._index_version == self._version

    def _require_fresh_index(self) -> torch.Tensor:
        if self._index is None:
            raise StaleIndexError("Item index has not been built; call build_item_index() after training")
        if self._index_version != self._version:
            raise StaleIndexError("Item index is stale (parameters changed); call build_item_index() again")
        return self._index

    @torch.no_grad()
    def build_item_index(self) -> torch.Tensor:
        was_training = self.training
        self.eval()
        items = torch.arange(self.n_items, device=self.item_emb.weight.device)
        index = self.encode_items(items).detach().clone()
        self.train(was_training)
        self._index = index
        self._index_version = self._version
        return index

    def item_vectors(self) -> torch.Tensor:
        return self._require_fresh_index()

    @torch.no_grad()
    def score_users(self, users, feats: torch.Tensor | None = None) -> torch.Tensor:
        index = self._require_fresh_index()
        u_vec = self.encode_users(users, feats)
        return u_vec @ index.T

    @torch.no_grad()
    def score_user(self, user: int, user_feats=None) -> tuple[np.ndarray, np.ndarray]:
        """Score one user against every item.

        Returns ``(scores, ranked)``: ``scores[i]`` for every item and all item
        indices ordered by descending score, ties in index order.
        """
        feats = None
        if user_feats is not None:
            feats = torch.as_tensor(np.asarray(user_feats), dtype=torch.float32).reshape(1, -1)
        scores = self.score_users([int(user)], feats)[0]
        scores_np = scores.cpu().numpy()
        ranked = np.argsort(-scores_np, kind="mergesort")
        return scores_np, ranked

    def load_state_dict(self, state_dict, strict: bool = True, assign: bool = False):
        result = super().load_state_dict(state_dict, strict=strict, assign=assign)
        self.mark_updated()
        return result

    def _apply(self, fn, *args, **kwargs):
        # .to()/.double()/.half() replace parameter tensors; the cached index no longer matches
        result = super()._apply(fn, *args, **kwargs)
        self.mark_updated()
        return result
