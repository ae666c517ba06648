from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import torch


@dataclass
class PCAResult:
    coords: np.ndarray      # (N, k)
    components: np.ndarray  # (k, D), unit rows
    explained_variance: np.ndarray  # (k,)
    mean: np.ndarray        # (D,)


@torch.no_grad()
def pca_project(
    vectors,
    n_components: int = 2,
    n_iter: int = 100,
    tol: float = 1e-6,
    seed: int = 0,
) -> PCAResult:
    """Project rows onto their leading principal components.

    Components come from power iteration on the covariance matrix, deflating
    after each one. Deterministic for a fixed ``seed``.
    """
    X = torch.as_tensor(np.asarray(vectors.detach().cpu() if torch.is_tensor(vectors) else vectors),
                        dtype=torch.float64)
    if X.dim() != 2 or X.size(0) < 2:
        raise ValueError(f"pca_project needs a [N>=2, D] matrix, got shape {tuple(X.shape)}")
    n, d = X.shape
    k = min(int(n_components), d)
    if k <= 0:
        raise ValueError(f"n_components must be > 0, got {n_components}")

    mean = X.mean(dim=0)
    Xc = X - mean
    cov = Xc.T @ Xc / (n - 1)

    gen = torch.Generator().manual_seed(int(seed))
    components = torch.zeros(k, d, dtype=torch.float64)
    variances = torch.zeros(k, dtype=torch.float64)
    for c in range(k):
        v = torch.randn(d, generator=gen, dtype=torch.float64)
        v = v / v.norm()
        for _ in range(int(n_iter)):
            w = cov @ v
            norm = w.norm()
            if norm <= 1e-12:
                # remaining variance is zero; any orthogonal direction will do
                break
            w = w / norm
            if (w - v).norm() < tol:
                v = w
                break
            v = w
        lam = float(v @ cov @ v)
        components[c] = v
        variances[c] = max(lam, 0.0)
        cov = cov - lam * torch.outer(v, v)

    coords = Xc @ components.T
    return PCAResult(
        coords=coords.numpy().astype(np.float32),
        components=components.numpy().astype(np.float32),
        explained_variance=variances.numpy(),
        mean=mean.numpy().astype(np.float32),
    )
