from __future__ import annotations

from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
import torch
from torch.utils.data import Dataset


class InteractionsDS(Dataset):
    """Implicit-positive (user, item) pairs as long tensors."""

    def __init__(self, users, items):
        self.u = torch.as_tensor(np.asarray(users), dtype=torch.long)
        self.i = torch.as_tensor(np.asarray(items), dtype=torch.long)
        if self.u.shape != self.i.shape or self.u.dim() != 1:
            raise ValueError(f"users/items must be 1-D and aligned, got {tuple(self.u.shape)} vs {tuple(self.i.shape)}")
        self.n_users = int(self.u.max().item()) + 1 if len(self.u) > 0 else 0
        self.n_items = int(self.i.max().item()) + 1 if len(self.i) > 0 else 0

    @classmethod
    def from_frame(cls, df: pd.DataFrame, user_col: str = "user_id", item_col: str = "item_id") -> "InteractionsDS":
        return cls(df[user_col].to_numpy(), df[item_col].to_numpy())

    def __len__(self):
        return self.u.shape[0]

    def __getitem__(self, idx):
        return self.u[idx], self.i[idx]


def reindex_ids(
    df: pd.DataFrame,
    user_col: str = "user_id",
    item_col: str = "item_id",
) -> Tuple[pd.DataFrame, Dict[int, int], Dict[int, int]]:
    """Remap raw user/item ids to consecutive ints from 0, in first-seen order."""
    uid_map = {u: k for k, u in enumerate(df[user_col].unique())}
    iid_map = {i: k for k, i in enumerate(df[item_col].unique())}

    out = df.copy()
    out[user_col] = out[user_col].map(uid_map).astype(int)
    out[item_col] = out[item_col].map(iid_map).astype(int)
    return out, uid_map, iid_map


def filter_min_interactions(df: pd.DataFrame, min_user_interactions: int, user_col: str = "user_id") -> pd.DataFrame:
    """Keep only users with at least ``min_user_interactions`` rows."""
    if min_user_interactions <= 1:
        return df
    counts = df[user_col].value_counts()
    keep = counts[counts >= min_user_interactions].index
    return df[df[user_col].isin(keep)]


def build_user_histories(
    df: pd.DataFrame,
    user_col: str = "user_id",
    item_col: str = "item_id",
) -> Dict[int, List[Tuple[int, float, int]]]:
    """Per user: [(item, rating, ts), ...] sorted by rating desc, then most recent first."""
    has_rating = "rating" in df.columns
    has_ts = "ts" in df.columns
    history: Dict[int, List[Tuple[int, float, int]]] = {}
    for row in df.itertuples(index=False):
        u = int(getattr(row, user_col))
        i = int(getattr(row, item_col))
        r = float(row.rating) if has_rating else 1.0
        ts = int(row.ts) if has_ts else 0
        history.setdefault(u, []).append((i, r, ts))
    for entries in history.values():
        entries.sort(key=lambda x: (x[1], x[2]), reverse=True)
    return history


def leave_last_out(
    df: pd.DataFrame,
    user_col: str = "user_id",
    ts_col: str = "ts",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Hold out each user's most recent interaction.

    Users with a single interaction stay entirely in train.
    """
    if df.empty:
        return df.copy(), df.copy()
    ordered = df.sort_values([user_col, ts_col], kind="mergesort")
    last_mask = ~ordered.duplicated(subset=[user_col], keep="last")
    counts = ordered[user_col].map(ordered[user_col].value_counts())
    held = last_mask & (counts > 1)
    return ordered[~held].reset_index(drop=True), ordered[held].reset_index(drop=True)


def seen_items(df: pd.DataFrame, user_col: str = "user_id", item_col: str = "item_id") -> Dict[int, set[int]]:
    seen: Dict[int, set[int]] = {}
    for u, i in df[[user_col, item_col]].itertuples(index=False):
        seen.setdefault(int(u), set()).add(int(i))
    return seen


def make_demo_interactions(
    n_users: int = 200,
    n_items: int = 300,
    n_genres: int = 19,
    per_user: int = 25,
    seed: int = 42,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """Synthetic MovieLens-like catalogue.

    Every item gets 1-3 genres (one-hot rows of ``genres``); every user likes 2
    genres and draws mostly from items in them. Returns raw (non-dense) ids so
    callers go through ``reindex_ids`` like real data would.

    Returns:
        ratings: DataFrame[user_id, item_id, rating, ts] with raw ids.
        genres: float32 array [n_items, n_genres], rows in item-id order 1..n_items.
    """
    if n_users <= 0 or n_items <= 0 or n_genres <= 0:
        raise ValueError("n_users, n_items and n_genres must be > 0")
    rng = np.random.default_rng(seed)

    genres = np.zeros((n_items, n_genres), dtype=np.float32)
    for i in range(n_items):
        k = int(rng.integers(1, min(3, n_genres) + 1))
        genres[i, rng.choice(n_genres, size=k, replace=False)] = 1.0

    per_user = max(1, min(int(per_user), n_items))
    rows = []
    for u in range(n_users):
        liked = rng.choice(n_genres, size=min(2, n_genres), replace=False)
        affinity = genres[:, liked].sum(axis=1) + 0.05
        p = affinity / affinity.sum()
        items = rng.choice(n_items, size=per_user, replace=False, p=p)
        ts = rng.integers(0, 1_000_000, size=per_user)
        for i, t in zip(items, ts):
            rating = float(np.clip(3.0 + 2.0 * genres[i, liked].max() + rng.normal(0, 0.5), 1.0, 5.0))
            rows.append((u + 1, int(i) + 1, round(rating), int(t)))

    ratings = pd.DataFrame(rows, columns=["user_id", "item_id", "rating", "ts"])
    return ratings, genres


def align_item_features(features: np.ndarray, iid_map: Dict[int, int], raw_offset: int = 1) -> np.ndarray:
    """Reorder a raw-id-ordered feature matrix to dense item indices.

    ``features[raw_id - raw_offset]`` is the row for ``raw_id``; items never seen
    in interactions are dropped.
    """
    out = np.zeros((len(iid_map), features.shape[1]), dtype=np.float32)
    for raw, idx in iid_map.items():
        out[idx] = features[int(raw) - raw_offset]
    return out
