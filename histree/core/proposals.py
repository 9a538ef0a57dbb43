"""Sampled per-feature split candidates stored in CSR layout."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from ..comm import Communicator
from ..data import RowShard

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SparseSplitProposals:
    """Sorted unique candidate thresholds for every feature.

    ``split_proposals[row_pointers[f]:row_pointers[f + 1]]`` holds the
    candidates of feature ``f``. Bin ids are global positions in
    ``split_proposals`` so one histogram axis covers every feature.
    """

    split_proposals: np.ndarray
    row_pointers: np.ndarray

    NOT_FOUND = -1

    @property
    def num_features(self) -> int:
        return int(self.row_pointers.shape[0] - 1)

    @property
    def histogram_size(self) -> int:
        return int(self.split_proposals.shape[0])

    def feature_range(self, feature: int) -> tuple[int, int]:
        return int(self.row_pointers[feature]), int(self.row_pointers[feature + 1])

    def find_bin(self, x: float, feature: int) -> int:
        """Smallest global bin whose threshold is ``>= x``, or ``NOT_FOUND``."""
        begin, end = self.feature_range(feature)
        pos = begin + int(np.searchsorted(self.split_proposals[begin:end], x, side="left"))
        return pos if pos < end else self.NOT_FOUND

    def find_bins(self, values: np.ndarray, feature: int) -> np.ndarray:
        """Vectorised :meth:`find_bin` for a column of ``feature`` values."""
        begin, end = self.feature_range(feature)
        pos = np.searchsorted(self.split_proposals[begin:end], values, side="left").astype(np.int64)
        pos += begin
        pos[pos >= end] = self.NOT_FOUND
        return pos

    def bin_feature_ids(self) -> np.ndarray:
        """Feature id owning each global bin."""
        return np.repeat(
            np.arange(self.num_features, dtype=np.int64), np.diff(self.row_pointers)
        )


def sample_rows(split_samples: int, seed: int, dataset_rows: int) -> np.ndarray:
    """Global row ids drawn identically on every worker.

    Uniform with replacement; when the sample would cover the whole dataset
    every row is taken exactly once instead.
    """
    if dataset_rows <= 0:
        return np.empty(0, dtype=np.int64)
    if split_samples >= dataset_rows:
        return np.arange(dataset_rows, dtype=np.int64)
    rng = np.random.default_rng(seed)
    return rng.integers(0, dataset_rows, size=split_samples, dtype=np.int64)


def select_split_samples(
    shard: RowShard,
    split_samples: int,
    seed: int,
    dataset_rows: int,
    comm: Communicator,
) -> SparseSplitProposals:
    """Build candidate thresholds from a globally shared row sample.

    Every worker fills the sampled rows it owns and leaves zeros elsewhere;
    the element-wise sum across workers therefore reconstructs the sample.
    """
    rows = sample_rows(split_samples, seed, dataset_rows)
    n_features = shard.num_features
    dtype = shard.X.dtype

    draft = np.zeros((n_features, rows.size), dtype=dtype)
    owned = (rows >= shard.row_start) & (rows < shard.row_stop)
    if owned.any():
        local_rows = rows[owned] - shard.row_start
        draft[:, owned] = shard.X[local_rows, :, 0].T
    draft = comm.allreduce_sum(draft)

    row_pointers = np.zeros(n_features + 1, dtype=np.int32)
    parts: list[np.ndarray] = []
    for j in range(n_features):
        unique = np.unique(draft[j])
        parts.append(unique)
        row_pointers[j + 1] = row_pointers[j] + unique.size
    values = np.concatenate(parts).astype(dtype, copy=False) if parts else np.empty(0, dtype=dtype)

    if n_features and logger.isEnabledFor(logging.DEBUG):
        counts = np.diff(row_pointers)
        logger.debug(
            "split proposals: %d samples, %d features, %d candidates (min %d, max %d per feature)",
            rows.size,
            n_features,
            values.size,
            int(counts.min()),
            int(counts.max()),
        )
    return SparseSplitProposals(split_proposals=values, row_pointers=row_pointers)
