# towerrec/utils.py
from __future__ import annotations

"""
Small helpers shared by the trainer and the CLIs.
- seed_all(seed): seed Python, NumPy and torch RNGs
- get_device(): pick 'cuda' | 'mps' | 'cpu'
- Logger: per-step/per-epoch scalars to CSV + (optional) TensorBoard
- timer(): context manager to time code blocks
"""

import os
import random
import time
from contextlib import contextmanager
from typing import Optional

import numpy as np
import torch

# TensorBoard is optional; guard the import.
try:
    from torch.utils.tensorboard import SummaryWriter  # type: ignore
except ImportError:  # pragma: no cover
    SummaryWriter = None  # type: ignore[misc,assignment]


def seed_all(seed: int = 42) -> None:
    """Set random seeds for reproducibility (Python, NumPy, PyTorch)."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)


def get_device(prefer: Optional[str] = None) -> str:
    """Choose compute device; an explicit preference wins when it is usable."""
    if prefer == "cpu":
        return "cpu"
    if prefer in ("cuda", "gpu"):
        if torch.cuda.is_available():
            return "cuda"
        print("[warn] CUDA requested but not available. Using CPU.")
        return "cpu"
    if prefer == "mps":
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():  # type: ignore[attr-defined]
            return "mps"
        print("[warn] MPS requested but not available. Using CPU.")
        return "cpu"

    if torch.cuda.is_available():
        return "cuda"
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return "mps"
    return "cpu"


class Logger:
    """Appends ``step,split,metric,value`` rows to ``metrics.csv``."""

    def __init__(self, run_dir: str, use_tb: bool = False):
        os.makedirs(run_dir, exist_ok=True)
        self.run_dir = run_dir
        if use_tb and SummaryWriter is None:
            print("[warn] tensorboard is not installed; logging to CSV only.")
        self.tb = SummaryWriter(run_dir) if (use_tb and SummaryWriter is not None) else None
        self.csv_path = os.path.join(run_dir, "metrics.csv")
        if not os.path.exists(self.csv_path):
            with open(self.csv_path, "w", encoding="utf-8") as f:
                f.write("step,split,metric,value\n")

    def log_scalar(self, step: int, split: str, metric: str, value: float):
        v = float(value)
        with open(self.csv_path, "a", encoding="utf-8") as f:
            f.write(f"{step},{split},{metric},{v}\n")
        if self.tb:
            self.tb.add_scalar(f"{split}/{metric}", v, step)

    def log_dict(self, step: int, split: str, metrics: dict[str, float]):
        for k, v in metrics.items():
            self.log_scalar(step, split, k, v)

    def close(self):
        if self.tb:
            self.tb.flush()
            self.tb.close()


@contextmanager
def timer(name: str = "block"):
    """Context manager to time a code block."""
    t0 = time.time()
    try:
        yield
    finally:
        dt = time.time() - t0
        print(f"[timer] {name}: {dt:.3f}s")


def count_trainable_params(model: torch.nn.Module) -> int:
    return int(sum(p.numel() for p in model.parameters() if p.requires_grad))
