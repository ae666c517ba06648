from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from towerrec.models.twotower import TwoTower


def recommend_top_k(
    model: TwoTower,
    user: int,
    k: int,
    seen: Optional[Iterable[int]] = None,
    user_feats: Optional[Sequence[float]] = None,
) -> List[Tuple[int, float]]:
    """Top-``k`` (item, score) pairs for ``user``, skipping ``seen`` items.

    Needs a fresh item index (see ``TwoTower.build_item_index``).
    """
    scores, ranked = model.score_user(user, user_feats)
    k = max(int(k), 0)
    if k == 0:
        return []
    skip = set(int(i) for i in seen) if seen is not None else set()
    out: List[Tuple[int, float]] = []
    for item in ranked:
        item = int(item)
        if item in skip:
            continue
        out.append((item, float(scores[item])))
        if len(out) >= k:
            break
    return out


def top_rated_items(history: Sequence[Tuple[int, float, int]], n: int = 10) -> List[int]:
    """A user's ``n`` best items from a history sorted like ``build_user_histories``."""
    ordered = sorted(history, key=lambda x: (x[1], x[2]), reverse=True)
    return [int(item) for item, _, _ in ordered[: max(n, 0)]]


def rank_for_users(model: TwoTower, users: Sequence[int], seen: dict[int, set[int]] | None = None) -> List[List[int]]:
    """Full rankings for many users at once, seen items pushed out of the list."""
    scores = model.score_users(list(users)).cpu().numpy()
    ranked_lists: List[List[int]] = []
    for row, u in zip(scores, users):
        if seen and u in seen and seen[u]:
            row = row.copy()
            row[np.fromiter(seen[u], dtype=np.int64)] = -np.inf
        order = np.argsort(-row, kind="mergesort")
        ranked_lists.append([int(i) for i in order if np.isfinite(row[i])])
    return ranked_lists
