# towerrec/train.py
from __future__ import annotations

"""
Train a two-tower retrieval model with in-batch softmax:
- YAML config + timestamped run directory with config snapshot
- demo interactions reindexed, filtered and split leave-last-out
- per-epoch HR@K / NDCG@K on the held-out items (seen items excluded)
- save last.ckpt and best.ckpt, early stopping on NDCG@K
- 2-D PCA map of the final item index saved as item_pca.npy
- --compare: shallow and deep models trained on the same batches, side by side
"""

import argparse
import os
from datetime import datetime
from typing import Optional

import numpy as np
import torch
import yaml
from torch.utils.data import DataLoader
from tqdm import tqdm

from towerrec.data import (
    InteractionsDS,
    align_item_features,
    build_user_histories,
    filter_min_interactions,
    leave_last_out,
    make_demo_interactions,
    reindex_ids,
    seen_items,
)
from towerrec.metrics import hit_rate_at_k, ndcg_at_k
from towerrec.models.twotower import TwoTower
from towerrec.pca import pca_project
from towerrec.recommend import rank_for_users, recommend_top_k, top_rated_items
from towerrec.trainer import TwoTowerTrainer
from towerrec.utils import Logger, get_device, seed_all, timer


# -----------------------------
# Helpers
# -----------------------------
def load_cfg(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def make_run_dir(base_dir: str, exp_name: str) -> str:
    run_id = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    run_dir = os.path.join(base_dir, exp_name, run_id)
    os.makedirs(run_dir, exist_ok=True)
    # Maintain a 'latest' symlink if the filesystem allows it
    latest = os.path.join(base_dir, exp_name, "latest")
    try:
        if os.path.islink(latest):
            os.remove(latest)
        if not os.path.exists(latest):
            os.symlink(os.path.abspath(run_dir), latest)
    except OSError as e:
        print(f"[warn] could not update {latest}: {e}")
    return run_dir


def save_cfg_snapshot(cfg: dict, run_dir: str) -> None:
    with open(os.path.join(run_dir, "config.snapshot.yaml"), "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)


def prepare_data(cfg: dict) -> dict:
    """Demo interactions -> dense ids -> min-count filter -> leave-last-out split."""
    d = cfg.get("data", {})
    raw, genres = make_demo_interactions(
        n_users=int(d.get("n_users", 200)),
        n_items=int(d.get("n_items", 300)),
        n_genres=int(d.get("n_genres", 19)),
        per_user=int(d.get("per_user", 25)),
        seed=int(cfg.get("seed", 42)),
    )
    raw = filter_min_interactions(raw, int(d.get("min_user_interactions", 1)))
    if raw.empty:
        raise RuntimeError("Empty dataset after min_user_interactions filtering.")
    df, uid_map, iid_map = reindex_ids(raw)
    train_df, val_df = leave_last_out(df)

    return {
        "train_df": train_df,
        "val_df": val_df,
        "n_users": len(uid_map),
        "n_items": len(iid_map),
        "item_features": align_item_features(genres, iid_map),
        "seen": seen_items(train_df),
        "histories": build_user_histories(train_df),
        "uid_map": uid_map,
        "iid_map": iid_map,
    }


def build_model(cfg: dict, n_users: int, n_items: int, item_features: Optional[np.ndarray] = None) -> TwoTower:
    m = cfg.get("model", {})
    use_feats = bool(m.get("use_item_features", False)) and item_features is not None
    return TwoTower(
        n_users=n_users,
        n_items=n_items,
        embed_dim=int(m.get("embed_dim", 32)),
        user_layers=tuple(m.get("user_layers", [])),
        item_layers=tuple(m.get("item_layers", [])),
        item_features=(torch.from_numpy(item_features) if use_feats else None),
        init_std=float(m.get("init_std", 0.05)),
    )


def save_ckpt(path: str, model: TwoTower, epoch: int, best_val: float, cfg: dict) -> None:
    torch.save(
        {
            "state_dict": model.state_dict(),
            "model_kwargs": model.model_kwargs(),
            "epoch": int(epoch),
            "best_val": float(best_val),
            "cfg": cfg,
        },
        path,
    )


def load_model_from_ckpt(ckpt_path: str, device: str) -> tuple[TwoTower, dict]:
    ck = torch.load(ckpt_path, map_location="cpu", weights_only=False)
    model = TwoTower.from_kwargs(ck["model_kwargs"])
    model.load_state_dict(ck["state_dict"])
    model.to(device).eval()
    return model, ck.get("cfg", {})


@torch.no_grad()
def evaluate(model: TwoTower, val_df, seen: dict[int, set[int]], k: int = 10, max_users: int = 0) -> dict:
    """Rebuild the item index, then HR@k / NDCG@k over held-out items."""
    model.build_item_index()
    truths: dict[int, list[int]] = {}
    for u, i in val_df[["user_id", "item_id"]].itertuples(index=False):
        truths.setdefault(int(u), []).append(int(i))
    users = sorted(truths)
    if max_users and max_users > 0:
        users = users[:max_users]
    if not users:
        return {f"hr@{k}": 0.0, f"ndcg@{k}": 0.0}

    ranked: list[list[int]] = []
    for t in range(0, len(users), 1024):
        ranked.extend(rank_for_users(model, users[t:t + 1024], seen))
    true_lists = [truths[u] for u in users]
    return {
        f"hr@{k}": hit_rate_at_k(true_lists, ranked, k),
        f"ndcg@{k}": ndcg_at_k(true_lists, ranked, k),
    }


# -----------------------------
# Training run
# -----------------------------
def train_from_config(cfg: dict, run_dir: str, device: str = "cpu", progress: bool = True) -> dict:
    seed_all(int(cfg.get("seed", 42)))
    save_cfg_snapshot(cfg, run_dir)
    logger = Logger(run_dir, use_tb=bool(cfg.get("log", {}).get("tensorboard", False)))

    with timer("data"):
        data = prepare_data(cfg)
    print(f"[data] users={data['n_users']} items={data['n_items']} "
          f"train={len(data['train_df'])} val={len(data['val_df'])}")

    model = build_model(cfg, data["n_users"], data["n_items"], data["item_features"]).to(device)
    mode = "shallow" if model.is_shallow else "deep"
    print(f"[model] two_tower ({mode}) latent_dim={model.latent_dim}")

    optim_cfg = cfg.get("optim", {})
    eval_cfg = cfg.get("eval", {})
    k = int(eval_cfg.get("k", 10))
    max_users = int(eval_cfg.get("max_users", 0))
    patience = int(optim_cfg.get("early_stopping_patience", 3))
    metric = f"ndcg@{k}"

    trainer = TwoTowerTrainer(
        model,
        lr=float(optim_cfg.get("lr", 1e-3)),
        l2_reg=float(optim_cfg.get("l2_reg", 0.0)),
    )
    ds = InteractionsDS.from_frame(data["train_df"])

    state = {"best": -float("inf"), "best_epoch": 0, "bad": 0, "last": {}}

    def on_epoch_end(epoch: int, train_loss: float) -> bool:
        val = evaluate(model, data["val_df"], data["seen"], k=k, max_users=max_users)
        logger.log_dict(epoch, "val", val)
        state["last"] = val
        save_ckpt(os.path.join(run_dir, "last.ckpt"), model, epoch, max(state["best"], val[metric]), cfg)
        if val[metric] > state["best"] + 1e-6:
            state.update(best=val[metric], best_epoch=epoch, bad=0)
            save_ckpt(os.path.join(run_dir, "best.ckpt"), model, epoch, state["best"], cfg)
        else:
            state["bad"] += 1
        print(f"[epoch {epoch}] train loss {train_loss:.4f} | "
              f"val HR@{k} {val[f'hr@{k}']:.4f} | NDCG@{k} {val[metric]:.4f} | best {state['best']:.4f}")
        if patience > 0 and state["bad"] >= patience:
            print(f"[early-stop] no NDCG@{k} improvement for {patience} epochs")
            return True
        return False

    result = trainer.fit(
        ds,
        epochs=int(optim_cfg.get("epochs", 5)),
        batch_size=int(optim_cfg.get("batch_size", 512)),
        shuffle=True,
        seed=int(cfg.get("seed", 42)),
        logger=logger,
        progress=progress,
        on_epoch_end=on_epoch_end,
    )

    # final index + 2-D map of item vectors
    model.build_item_index()
    pca = pca_project(model.item_vectors(), n_components=2, seed=int(cfg.get("seed", 42)))
    np.save(os.path.join(run_dir, "item_pca.npy"), pca.coords)
    print(f"[saved] item PCA -> {os.path.join(run_dir, 'item_pca.npy')}")

    # sample recommendation for the most active user
    histories = data["histories"]
    if histories:
        user = max(histories, key=lambda u: len(histories[u]))
        recs = recommend_top_k(model, user, k, seen=data["seen"].get(user, set()))
        print(f"[sample] user {user} top rated: {top_rated_items(histories[user], k)}")
        print(f"[sample] user {user} recommended: {[i for i, _ in recs]}")

    logger.close()
    print(f"[done] best {metric}={state['best']:.4f} at epoch {state['best_epoch']} | artifacts -> {run_dir}")
    return {
        "run_dir": run_dir,
        "epoch_losses": result.epoch_losses,
        "best": state["best"],
        "best_epoch": state["best_epoch"],
        "last_val": state["last"],
        "stopped_early": result.stopped_early,
    }


# -----------------------------
# Shallow vs deep comparison
# -----------------------------
def _variant_cfgs(cfg: dict) -> tuple[dict, dict]:
    """Shallow and deep copies of ``cfg``; a shallow cfg gets a [64, embed_dim] deep variant."""
    m = dict(cfg.get("model", {}))
    embed_dim = int(m.get("embed_dim", 32))
    shallow = dict(cfg, model=dict(m, user_layers=[], item_layers=[], use_item_features=False))
    deep_m = dict(m)
    if not deep_m.get("user_layers") and not deep_m.get("item_layers"):
        deep_m.update(user_layers=[64, embed_dim], item_layers=[64, embed_dim], use_item_features=True)
    deep = dict(cfg, model=deep_m)
    return shallow, deep


def compare_from_config(cfg: dict, run_dir: str, device: str = "cpu", progress: bool = True) -> dict:
    """Train a shallow and a deep model on the same shuffled batches and compare them."""
    seed = int(cfg.get("seed", 42))
    seed_all(seed)
    save_cfg_snapshot(cfg, run_dir)
    logger = Logger(run_dir, use_tb=bool(cfg.get("log", {}).get("tensorboard", False)))

    data = prepare_data(cfg)
    print(f"[data] users={data['n_users']} items={data['n_items']} "
          f"train={len(data['train_df'])} val={len(data['val_df'])}")

    optim_cfg = cfg.get("optim", {})
    k = int(cfg.get("eval", {}).get("k", 10))
    max_users = int(cfg.get("eval", {}).get("max_users", 0))
    lr = float(optim_cfg.get("lr", 1e-3))
    l2_reg = float(optim_cfg.get("l2_reg", 0.0))

    models: dict[str, TwoTower] = {}
    trainers: dict[str, TwoTowerTrainer] = {}
    for name, variant in zip(("shallow", "deep"), _variant_cfgs(cfg)):
        # same seed per variant -> identical embedding tables at step 0
        seed_all(seed)
        models[name] = build_model(variant, data["n_users"], data["n_items"], data["item_features"]).to(device)
        trainers[name] = TwoTowerTrainer(models[name], lr=lr, l2_reg=l2_reg)
    print(f"[model] shallow latent_dim={models['shallow'].latent_dim} | "
          f"deep latent_dim={models['deep'].latent_dim}")

    gen = torch.Generator()
    gen.manual_seed(seed)
    dl = DataLoader(InteractionsDS.from_frame(data["train_df"]),
                    batch_size=int(optim_cfg.get("batch_size", 512)), shuffle=True, generator=gen)

    losses: dict[str, list[float]] = {"shallow": [], "deep": []}
    for epoch in range(1, int(optim_cfg.get("epochs", 5)) + 1):
        totals = {"shallow": 0.0, "deep": 0.0}; steps = 0
        batches = tqdm(dl, desc=f"epoch {epoch}", leave=False) if progress else dl
        for u, i in batches:
            for name, trainer in trainers.items():
                loss = trainer.train_step(u, i)
                losses[name].append(loss)
                totals[name] += loss
                logger.log_scalar(trainer.steps, name, "batch_loss", loss)
            steps += 1
        print(f"[epoch {epoch}] shallow loss {totals['shallow'] / steps:.4f} | "
              f"deep loss {totals['deep'] / steps:.4f}")

    metrics: dict[str, dict] = {}
    for name, model in models.items():
        metrics[name] = evaluate(model, data["val_df"], data["seen"], k=k, max_users=max_users)
        logger.log_dict(len(losses[name]), name, metrics[name])
        print(f"[{name}] HR@{k} {metrics[name][f'hr@{k}']:.4f} | NDCG@{k} {metrics[name][f'ndcg@{k}']:.4f}")

    recs: dict[str, list[int]] = {"shallow": [], "deep": []}
    user = None
    histories = data["histories"]
    if histories:
        user = max(histories, key=lambda u: len(histories[u]))
        seen = data["seen"].get(user, set())
        print(f"[compare] user {user} top rated: {top_rated_items(histories[user], k)}")
        for name, model in models.items():
            recs[name] = [i for i, _ in recommend_top_k(model, user, k, seen=seen)]
            print(f"[compare] user {user} {name}: {recs[name]}")
        overlap = len(set(recs["shallow"]) & set(recs["deep"]))
        print(f"[compare] overlap {overlap}/{k}")

    logger.close()
    return {"run_dir": run_dir, "losses": losses, "metrics": metrics, "user": user, "recs": recs}


# -----------------------------
# CLI
# -----------------------------
def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Train a two-tower retrieval model (in-batch softmax)")
    ap.add_argument("--config", default="configs/deep.yaml", help="YAML config path")
    ap.add_argument("--run_dir", default=None, help="Override run directory (otherwise timestamped dir is created)")
    ap.add_argument("--device", default=None, help="Force device: cuda|cpu|mps (default: auto)")
    ap.add_argument("--compare", action="store_true", help="Train shallow and deep variants side by side")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cfg = load_cfg(args.config)

    if args.run_dir:
        run_dir = args.run_dir
        os.makedirs(run_dir, exist_ok=True)
    else:
        base_runs = cfg.get("log", {}).get("dir", "runs")
        os.makedirs(base_runs, exist_ok=True)
        run_dir = make_run_dir(base_runs, cfg.get("exp_name", "two_tower"))
    print(f"[run_dir] {run_dir}")

    device = get_device(args.device)
    if args.compare:
        compare_from_config(cfg, run_dir, device=device)
    else:
        train_from_config(cfg, run_dir, device=device)


if __name__ == "__main__":
    main()
