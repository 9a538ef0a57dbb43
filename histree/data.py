"""Input normalisation and row sharding for histree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import torch


def ensure_numpy(array: np.ndarray | torch.Tensor | Sequence[float]) -> np.ndarray:
    """Convert ``array`` (ndarray, tensor, DataFrame or sequence) to ``np.ndarray``."""

    if isinstance(array, np.ndarray):
        return array
    if isinstance(array, torch.Tensor):
        return array.detach().cpu().numpy()
    return np.asarray(array)


def as_tree_inputs(
    X: np.ndarray | torch.Tensor | Sequence[float],
    gradients: np.ndarray | torch.Tensor | Sequence[float],
    hessians: np.ndarray | torch.Tensor | Sequence[float],
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``X[rows, F, 1]`` and ``g/h[rows, 1, outputs]`` views of the inputs.

    Two-dimensional features and one- or two-dimensional gradients are
    reshaped; arrays already in the builder layout pass through untouched.
    Float features keep their width, anything else is promoted to ``float64``.
    """
    X_np = ensure_numpy(X)
    if not np.issubdtype(X_np.dtype, np.floating):
        X_np = X_np.astype(np.float64)
    if X_np.ndim == 2:
        X_np = X_np[:, :, None]
    X_np = np.ascontiguousarray(X_np)

    def _gpair_layout(arr: np.ndarray | torch.Tensor | Sequence[float]) -> np.ndarray:
        out = ensure_numpy(arr).astype(np.float64, copy=False)
        if out.ndim == 1:
            out = out[:, None, None]
        elif out.ndim == 2:
            out = out[:, None, :]
        return out

    return X_np, _gpair_layout(gradients), _gpair_layout(hessians)


@dataclass(slots=True)
class RowShard:
    """Rows ``[row_start, row_start + num_rows)`` owned by one worker."""

    X: np.ndarray
    gradients: np.ndarray
    hessians: np.ndarray
    row_start: int = 0
    output_start: int = 0

    @property
    def num_rows(self) -> int:
        return int(self.X.shape[0])

    @property
    def num_features(self) -> int:
        return int(self.X.shape[1])

    @property
    def num_outputs(self) -> int:
        return int(self.gradients.shape[2])

    @property
    def row_stop(self) -> int:
        return self.row_start + self.num_rows

    def validate(self) -> None:
        """Check the layout contract; any violation is fatal for the round."""
        X = self.X
        if X.ndim != 3 or X.shape[2] != 1:
            raise ValueError(f"X must have shape [rows, features, 1], got {X.shape}")
        if not X.flags.c_contiguous:
            raise ValueError("X must be dense and row-major (C-contiguous)")
        if not np.issubdtype(X.dtype, np.floating):
            raise ValueError(f"X must hold floating point values, got {X.dtype}")
        for name, arr in (("gradients", self.gradients), ("hessians", self.hessians)):
            if arr.ndim != 3 or arr.shape[1] != 1:
                raise ValueError(f"{name} must have shape [rows, 1, outputs], got {arr.shape}")
            if arr.shape[0] != X.shape[0]:
                raise ValueError(
                    f"{name} rows ({arr.shape[0]}) are not aligned with X rows ({X.shape[0]})"
                )
        if self.gradients.shape != self.hessians.shape:
            raise ValueError(
                f"gradients {self.gradients.shape} and hessians {self.hessians.shape} "
                "must cover the same rows and outputs"
            )
        if self.gradients.shape[2] == 0:
            raise ValueError("at least one output is required")
        if self.output_start != 0:
            raise ValueError("Expect all outputs to be present (outputs must start at 0)")
        if self.row_start < 0:
            raise ValueError("row_start must be non-negative")


def partition_rows(
    X: np.ndarray,
    gradients: np.ndarray,
    hessians: np.ndarray,
    num_workers: int,
) -> list[RowShard]:
    """Split builder-layout arrays into ``num_workers`` contiguous row shards."""
    if num_workers <= 0:
        raise ValueError("num_workers must be positive")
    n_rows = X.shape[0]
    if gradients.shape[0] != n_rows or hessians.shape[0] != n_rows:
        raise ValueError("X, gradients and hessians row mismatch")
    bounds = np.array_split(np.arange(n_rows), num_workers)
    shards: list[RowShard] = []
    cursor = 0
    for rows in bounds:
        stop = cursor + int(rows.size)
        shards.append(
            RowShard(
                X=np.ascontiguousarray(X[cursor:stop]),
                gradients=gradients[cursor:stop],
                hessians=hessians[cursor:stop],
                row_start=cursor,
            )
        )
        cursor = stop
    return shards
