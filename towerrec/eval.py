# towerrec/eval.py
from __future__ import annotations
"""
Evaluate a trained two-tower checkpoint on its leave-last-out split:
- HR@K / NDCG@K / P@K / R@K / MRR@K with train items excluded
- flexible checkpoint resolution (file, run dir with best/last, or runs/<exp>/latest/best.ckpt)
"""

import argparse
import json
import os
from typing import Dict, List

import torch

from towerrec.metrics import hit_rate_at_k, mrr_at_k, ndcg_at_k, precision_recall_at_k
from towerrec.models.twotower import TwoTower
from towerrec.recommend import rank_for_users
from towerrec.train import load_cfg, load_model_from_ckpt, prepare_data
from towerrec.utils import get_device


def resolve_ckpt_path(ckpt_arg: str | None, cfg: dict | None) -> str:
    """Return a path to a checkpoint file."""
    if ckpt_arg:
        if os.path.isdir(ckpt_arg):
            # prefer best.ckpt -> last.ckpt
            for name in ("best.ckpt", "last.ckpt"):
                path = os.path.join(ckpt_arg, name)
                if os.path.exists(path):
                    return path
            raise FileNotFoundError(f"No best.ckpt/last.ckpt in {ckpt_arg}")
        if os.path.isfile(ckpt_arg):
            return ckpt_arg
        raise FileNotFoundError(f"Checkpoint not found: {ckpt_arg}")

    cfg = cfg or {}
    base = cfg.get("log", {}).get("dir", "runs")
    exp = cfg.get("exp_name", "two_tower")
    best = os.path.join(base, exp, "latest", "best.ckpt")
    if os.path.exists(best):
        return best
    raise FileNotFoundError(f"Could not resolve checkpoint. Pass --ckpt or ensure {best} exists.")


@torch.no_grad()
def eval_ranking(
    model: TwoTower,
    truths: Dict[int, List[int]],
    seen: Dict[int, set[int]],
    k_list: List[int],
    limit_users: int | None = None,
) -> Dict[int, Dict[str, float]]:
    users = sorted(truths)
    if limit_users and limit_users > 0:
        users = users[:limit_users]

    model.build_item_index()
    ranked_lists: List[List[int]] = []
    for t in range(0, len(users), 1024):
        ranked_lists.extend(rank_for_users(model, users[t:t + 1024], seen))
    true_lists = [truths[u] for u in users]

    results: Dict[int, Dict[str, float]] = {}
    for K in k_list:
        hr = hit_rate_at_k(true_lists, ranked_lists, K)
        ndcg = ndcg_at_k(true_lists, ranked_lists, K)
        P, R = precision_recall_at_k(true_lists, ranked_lists, K)
        mrr = mrr_at_k(true_lists, ranked_lists, K)
        results[K] = {"HR": hr, "NDCG": ndcg, "P": P, "R": R, "MRR": mrr}
        print(f"[ranking] K={K:>3} | HR={hr:.4f} NDCG={ndcg:.4f} P={P:.4f} R={R:.4f} MRR={mrr:.4f}")
    return results


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Evaluate a two-tower checkpoint (top-K retrieval)")
    p.add_argument("--config", default=None, help="YAML config (only used to locate runs/<exp>/latest)")
    p.add_argument("--ckpt", default=None, help="Path to .ckpt file or a run dir (best/last)")
    p.add_argument("--k", default="10,20", help="Comma-separated Ks, e.g. '10,20,50'")
    p.add_argument("--max_users", type=int, default=0, help="evaluate only first N users; 0=all")
    p.add_argument("--device", default=None, help="Force device: cuda|cpu|mps (default: auto)")
    p.add_argument("--out", default=None, help="Optional path to write metrics JSON")
    return p.parse_args(argv)


def main(argv=None):
    a = parse_args(argv)
    cfg = load_cfg(a.config) if a.config else None
    device = get_device(a.device)

    ckpt_path = resolve_ckpt_path(a.ckpt, cfg)
    model, cfg_ck = load_model_from_ckpt(ckpt_path, device)
    print(f"[ckpt] {ckpt_path} | users={model.n_users} items={model.n_items}")

    # the checkpoint's own config regenerates the exact split it was trained on
    data = prepare_data(cfg_ck)
    if data["n_users"] != model.n_users or data["n_items"] != model.n_items:
        raise RuntimeError(
            f"Checkpoint shape mismatch: ckpt users/items {model.n_users}/{model.n_items} "
            f"vs data {data['n_users']}/{data['n_items']}"
        )
    truths: Dict[int, List[int]] = {}
    for u, i in data["val_df"][["user_id", "item_id"]].itertuples(index=False):
        truths.setdefault(int(u), []).append(int(i))

    K_list = sorted({int(x) for x in a.k.split(",") if x.strip()})
    metrics = eval_ranking(model, truths, data["seen"], K_list, limit_users=a.max_users or None)

    if a.out:
        os.makedirs(os.path.dirname(os.path.abspath(a.out)), exist_ok=True)
        with open(a.out, "w", encoding="utf-8") as f:
            json.dump({"ranking": metrics}, f, indent=2)
        print(f"[saved] metrics -> {a.out}")
    return metrics


if __name__ == "__main__":
    main()
