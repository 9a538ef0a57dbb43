"""Level histograms: accumulation, global reduction, scan and sibling subtraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import torch

from ..comm import Communicator
from .proposals import SparseSplitProposals
from .tree import Tree, left_child, level_begin, nodes_in_level, right_child

# Trailing GPair axis of every histogram tensor.
GRAD = 0
HESS = 1


def select_histogram_node(
    parent_id: int,
    hessian: np.ndarray,
    policy: Literal["hessian", "left"] = "hessian",
) -> tuple[int, int]:
    """Return ``(direct, derived)`` children of ``parent_id``.

    ``direct`` is accumulated and scanned, ``derived`` is recovered as parent
    minus ``direct``. The ``"hessian"`` policy scans the child with less
    first-output Hessian mass (fewer rows to bin); ties go left.
    """
    left, right = left_child(parent_id), right_child(parent_id)
    if policy == "left":
        return left, right
    if hessian[left, 0] > hessian[right, 0]:
        return right, left
    return left, right


@dataclass(slots=True)
class LevelPlan:
    """Which nodes of one level are accumulated, scanned, derived and evaluated."""

    depth: int
    compute: list[int] = field(default_factory=list)
    derive: list[tuple[int, int, int]] = field(default_factory=list)  # (derived, direct, parent)

    @property
    def active(self) -> list[int]:
        return sorted(self.compute + [derived for derived, _, _ in self.derive])

    def compute_mask(self) -> np.ndarray:
        """Boolean mask over the level's node range for the nodes to accumulate."""
        mask = np.zeros(nodes_in_level(self.depth), dtype=bool)
        begin = level_begin(self.depth)
        for node_id in self.compute:
            mask[node_id - begin] = True
        return mask


def plan_level(
    depth: int,
    tree: Tree,
    histogram_mode: Literal["subtract", "rebuild"] = "subtract",
    sibling_policy: Literal["hessian", "left"] = "hessian",
) -> LevelPlan:
    """Decide the histogram work for ``depth`` from the splits of ``depth - 1``.

    Children of leaf parents never received rows and are left out entirely.
    """
    plan = LevelPlan(depth=depth)
    if depth == 0:
        plan.compute.append(0)
        return plan
    prev_begin = level_begin(depth - 1)
    for parent_id in range(prev_begin, prev_begin + nodes_in_level(depth - 1)):
        if tree.is_leaf(parent_id):
            continue
        if histogram_mode == "rebuild":
            plan.compute.extend((left_child(parent_id), right_child(parent_id)))
            continue
        direct, derived = select_histogram_node(parent_id, tree.hessian, sibling_policy)
        plan.compute.append(direct)
        plan.derive.append((derived, direct, parent_id))
    plan.compute.sort()
    return plan


class HistogramArena:
    """``[max_nodes, histogram_size, num_outputs, 2]`` float64 GPair sums.

    Only the slice of the level being grown holds meaningful data; every
    other node keeps whatever its own level left behind.
    """

    def __init__(
        self,
        max_nodes: int,
        proposals: SparseSplitProposals,
        num_outputs: int,
        device: str | torch.device = "cpu",
    ) -> None:
        self.proposals = proposals
        self.max_nodes = int(max_nodes)
        self.num_outputs = int(num_outputs)
        self.histogram_size = proposals.histogram_size
        self.device = torch.device(device)
        self.data = torch.zeros(
            (self.max_nodes, self.histogram_size, self.num_outputs, 2),
            dtype=torch.float64,
            device=self.device,
        )
        self._feature_ranges = [
            proposals.feature_range(f) for f in range(proposals.num_features)
        ]

    @staticmethod
    def level_slice(depth: int) -> slice:
        begin = level_begin(depth)
        return slice(begin, begin + nodes_in_level(depth))

    def accumulate(
        self,
        depth: int,
        positions: np.ndarray,
        compute_mask: np.ndarray,
        X: np.ndarray,
        gradients: np.ndarray,
        hessians: np.ndarray,
    ) -> int:
        """Add local rows into the level slice; returns the number of rows binned.

        ``compute_mask`` flags the level's nodes whose histogram is built from
        rows. Values beyond a feature's last candidate are skipped for that
        feature only.
        """
        level = self.level_slice(depth)
        n_level = level.stop - level.start
        self.data[level].zero_()
        if self.histogram_size == 0 or positions.size == 0:
            return 0

        local_node = positions.astype(np.int64) - level.start
        in_level = (positions >= 0) & (local_node >= 0) & (local_node < n_level)
        selected = np.flatnonzero(in_level)
        selected = selected[compute_mask[local_node[selected]]]
        if selected.size == 0:
            return 0

        node_offset = local_node[selected] * self.histogram_size
        key_parts: list[np.ndarray] = []
        row_parts: list[np.ndarray] = []
        for feature in range(self.proposals.num_features):
            bins = self.proposals.find_bins(X[selected, feature, 0], feature)
            found = bins != SparseSplitProposals.NOT_FOUND
            key_parts.append(node_offset[found] + bins[found])
            row_parts.append(selected[found])
        keys_np = np.concatenate(key_parts)
        rows_np = np.concatenate(row_parts)
        if keys_np.size == 0:
            return int(selected.size)

        n_out = self.num_outputs
        hist_size = n_level * self.histogram_size * n_out
        keys = torch.as_tensor(keys_np, device=self.device)
        keys = (keys.view(-1, 1) * n_out + torch.arange(n_out, device=self.device)).reshape(-1)
        gw = torch.as_tensor(gradients[rows_np, 0, :], dtype=torch.float64, device=self.device)
        hw = torch.as_tensor(hessians[rows_np, 0, :], dtype=torch.float64, device=self.device)
        grad_hist = torch.bincount(keys, weights=gw.reshape(-1), minlength=hist_size)
        hess_hist = torch.bincount(keys, weights=hw.reshape(-1), minlength=hist_size)
        shape = (n_level, self.histogram_size, n_out)
        self.data[level, :, :, GRAD] = grad_hist.reshape(shape)
        self.data[level, :, :, HESS] = hess_hist.reshape(shape)
        return int(selected.size)

    def reduce(self, depth: int, comm: Communicator) -> None:
        """Globally sum the level slice across workers."""
        level = self.level_slice(depth)
        local = self.data[level].cpu().numpy()
        reduced = comm.allreduce_sum(local)
        self.data[level] = torch.from_numpy(reduced).to(self.device)

    def scan(self, node_ids: list[int]) -> None:
        """Turn raw per-bin sums of ``node_ids`` into per-feature cumulative sums."""
        if not node_ids:
            return
        idx = self._index(node_ids)
        for begin, end in self._feature_ranges:
            if end > begin:
                self.data[idx, begin:end] = self.data[idx, begin:end].cumsum(dim=1)

    def subtract(self, derived: list[int], direct: list[int], parents: list[int]) -> None:
        """``derived = parent - direct`` on cumulative histograms."""
        if not derived:
            return
        self.data[self._index(derived)] = (
            self.data[self._index(parents)] - self.data[self._index(direct)]
        )

    def scan_and_subtract(self, plan: LevelPlan) -> None:
        self.scan(plan.compute)
        if plan.derive:
            derived, direct, parents = (list(col) for col in zip(*plan.derive))
            self.subtract(derived, direct, parents)

    def _index(self, node_ids: list[int]) -> torch.Tensor:
        return torch.as_tensor(node_ids, dtype=torch.int64, device=self.device)


__all__ = [
    "GRAD",
    "HESS",
    "HistogramArena",
    "LevelPlan",
    "plan_level",
    "select_histogram_node",
]
