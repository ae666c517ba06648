from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import torch
from torch.utils.data import DataLoader
from tqdm import tqdm

from towerrec.data import InteractionsDS
from towerrec.errors import EmptyBatchError
from towerrec.losses import in_batch_softmax_loss
from towerrec.models.towers import as_index_tensor
from towerrec.models.twotower import TwoTower
from towerrec.utils import Logger


@dataclass
class FitResult:
    step_losses: List[float] = field(default_factory=list)
    epoch_losses: List[float] = field(default_factory=list)
    stopped_early: bool = False


class TwoTowerTrainer:
    """Runs in-batch softmax training steps on a ``TwoTower``.

    Embedding tables get ``SparseAdam`` (only rows seen in a batch move), tower
    weights get ``Adam``; both use the same learning rate.
    """

    def __init__(self, model: TwoTower, lr: float = 1e-3, l2_reg: float = 0.0):
        if lr <= 0:
            raise ValueError(f"lr must be > 0, got {lr}")
        if l2_reg < 0:
            raise ValueError(f"l2_reg must be >= 0, got {l2_reg}")
        self.model = model
        self.lr = float(lr)
        self.l2_reg = float(l2_reg)
        self.sparse_opt = torch.optim.SparseAdam(list(model.embedding_parameters()), lr=self.lr)
        dense = list(model.tower_parameters())
        self.dense_opt = torch.optim.Adam(dense, lr=self.lr) if dense else None
        self.steps = 0

    @property
    def device(self) -> torch.device:
        return self.model.user_emb.weight.device

    def _zero_grad(self) -> None:
        self.sparse_opt.zero_grad(set_to_none=True)
        if self.dense_opt is not None:
            self.dense_opt.zero_grad(set_to_none=True)

    def train_step(
        self,
        users,
        items,
        *,
        user_feats: Optional[torch.Tensor] = None,
        item_feats: Optional[torch.Tensor] = None,
    ) -> float:
        """One gradient update from a batch of positive (user, item) pairs; returns the loss."""
        u = as_index_tensor(users, device=self.device)
        i = as_index_tensor(items, device=self.device)
        if u.numel() == 0 or i.numel() == 0:
            raise EmptyBatchError("train_step needs at least one (user, item) pair")
        if u.numel() != i.numel():
            raise ValueError(f"users and items must be the same length ({u.numel()} vs {i.numel()})")

        self.model.train()
        self._zero_grad()
        U = self.model.encode_users(u, user_feats)
        V = self.model.encode_items(i, item_feats)
        loss = in_batch_softmax_loss(U, V, l2_reg=self.l2_reg)
        loss.backward()

        self.sparse_opt.step()
        if self.dense_opt is not None:
            self.dense_opt.step()
        self.model.mark_updated()
        self.steps += 1
        return float(loss.item())

    def fit(
        self,
        dataset: InteractionsDS,
        *,
        epochs: int,
        batch_size: int,
        shuffle: bool = True,
        seed: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        logger: Optional[Logger] = None,
        progress: bool = False,
        on_epoch_end: Optional[Callable[[int, float], bool | None]] = None,
    ) -> FitResult:
        """Mini-batch epochs over ``dataset``.

        ``should_stop`` is polled between batches. ``on_epoch_end(epoch, loss)``
        may return True to stop after that epoch.
        """
        if len(dataset) == 0:
            raise EmptyBatchError("fit needs a non-empty dataset")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {batch_size}")

        gen = None
        if seed is not None:
            gen = torch.Generator()
            gen.manual_seed(int(seed))
        dl = DataLoader(dataset, batch_size=int(batch_size), shuffle=shuffle, generator=gen)

        result = FitResult()
        for epoch in range(1, int(epochs) + 1):
            total = 0.0; steps = 0
            batches = tqdm(dl, desc=f"epoch {epoch}", leave=False) if progress else dl
            for u, i in batches:
                if should_stop is not None and should_stop():
                    result.stopped_early = True
                    break
                loss = self.train_step(u, i)
                result.step_losses.append(loss)
                if logger is not None:
                    logger.log_scalar(self.steps, "train", "batch_loss", loss)
                total += loss; steps += 1

            if steps:
                mean_loss = total / steps
                result.epoch_losses.append(mean_loss)
                if logger is not None:
                    logger.log_scalar(epoch, "train", "loss", mean_loss)
                if on_epoch_end is not None and on_epoch_end(epoch, mean_loss):
                    result.stopped_early = True
            if result.stopped_early:
                break
        return result
