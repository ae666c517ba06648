# towerrec/metrics.py
from __future__ import annotations
from typing import List, Sequence, Set, Tuple
import numpy as np

# -------- Helpers --------
def _as_sets(true_items: Sequence[Sequence[int]]) -> List[Set[int]]:
    return [set(x) for x in true_items]

def _clip_k(ranked: Sequence[Sequence[int]], k: int) -> List[List[int]]:
    return [list(r[:k]) for r in ranked]

def _mean(vals: List[float]) -> float:
    return float(np.mean(vals)) if vals else 0.0

# -------- Ranking metrics (binary relevance, macro over users) --------
def hit_rate_at_k(true_items: Sequence[Sequence[int]], ranked_items: Sequence[Sequence[int]], k: int) -> float:
    """Fraction of users with at least one held-out item in their top-K."""
    T = _as_sets(true_items); R = _clip_k(ranked_items, k)
    return _mean([float(len(t.intersection(r)) > 0) for t, r in zip(T, R)])

def precision_recall_at_k(
    true_items: Sequence[Sequence[int]],
    ranked_items: Sequence[Sequence[int]],
    k: int,
) -> Tuple[float, float]:
    T = _as_sets(true_items); R = _clip_k(ranked_items, k)
    precisions, recalls = [], []
    for t, r in zip(T, R):
        hit = len(t.intersection(r))
        precisions.append(hit / max(len(r), 1))
        recalls.append(hit / len(t) if t else 0.0)
    return _mean(precisions), _mean(recalls)

def mrr_at_k(true_items: Sequence[Sequence[int]], ranked_items: Sequence[Sequence[int]], k: int) -> float:
    T = _as_sets(true_items); R = _clip_k(ranked_items, k)
    rr = []
    for t, r in zip(T, R):
        recip = 0.0
        for j, item in enumerate(r, start=1):
            if item in t:
                recip = 1.0 / j
                break
        rr.append(recip)
    return _mean(rr)

def ndcg_at_k(true_items: Sequence[Sequence[int]], ranked_items: Sequence[Sequence[int]], k: int) -> float:
    T = _as_sets(true_items); R = _clip_k(ranked_items, k)

    def dcg(rel: np.ndarray) -> float:
        if rel.size == 0: return 0.0
        denom = np.log2(np.arange(2, rel.size + 2))
        return float(np.sum(rel / denom))

    vals = []
    for t, r in zip(T, R):
        rel = np.array([1.0 if x in t else 0.0 for x in r], dtype=np.float32)
        ideal = np.ones(min(len(t), k), dtype=np.float32)
        idcg = dcg(ideal)
        vals.append(dcg(rel) / idcg if idcg > 0 else 0.0)
    return _mean(vals)
