"""Best-split search over cumulative level histograms."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import torch

from .histogram import GRAD, HESS, HistogramArena
from .proposals import SparseSplitProposals
from .tree import Tree, calculate_leaf_value

EPS = 1e-5


@dataclass(eq=False)
class SplitDecision:
    """Best split found for one node; ``feature is None`` keeps the node a leaf."""

    node_id: int
    feature: int | None
    bin_index: int
    split_value: float
    gain: float
    left_gradient: np.ndarray
    right_gradient: np.ndarray
    left_hessian: np.ndarray
    right_hessian: np.ndarray

    @property
    def is_split(self) -> bool:
        return self.feature is not None


def split_gains(
    cumulative: torch.Tensor,
    node_gradient: torch.Tensor,
    node_hessian: torch.Tensor,
    alpha: float,
) -> torch.Tensor:
    """Gain of splitting at every bin, summed over outputs.

    ``cumulative`` is ``[nodes, bins, outputs, 2]``; node totals are
    ``[nodes, outputs]``. NaN gains (degenerate Hessians) are mapped to
    ``-inf`` so they can never be selected.
    """
    reg = max(EPS, alpha)
    G_L = cumulative[..., GRAD]
    H_L = cumulative[..., HESS]
    G = node_gradient[:, None, :]
    H = node_hessian[:, None, :]
    G_R = G - G_L
    H_R = H - H_L
    gain = 0.5 * (G_L * G_L / (H_L + reg) + G_R * G_R / (H_R + reg) - G * G / (H + reg))
    gain = gain.sum(dim=2)
    return torch.where(torch.isnan(gain), torch.full_like(gain, float("-inf")), gain)


def _no_split(node_id: int, num_outputs: int) -> SplitDecision:
    zeros = np.zeros(num_outputs, dtype=np.float64)
    return SplitDecision(
        node_id=node_id,
        feature=None,
        bin_index=-1,
        split_value=0.0,
        gain=0.0,
        left_gradient=zeros,
        right_gradient=zeros.copy(),
        left_hessian=zeros.copy(),
        right_hessian=zeros.copy(),
    )


def find_best_splits(
    arena: HistogramArena,
    tree: Tree,
    node_ids: Sequence[int],
    alpha: float,
) -> list[SplitDecision]:
    """Evaluate every (feature, bin) of ``node_ids`` and pick the best per node.

    Bins are laid out feature after feature, so taking the first maximum
    reproduces a scan over features then bins with a strict ``>`` update.
    A split is only reported when its gain exceeds ``EPS`` and both children
    keep strictly positive first-output Hessian mass.
    """
    num_outputs = tree.num_outputs
    if not node_ids:
        return []
    if arena.histogram_size == 0:
        return [_no_split(node_id, num_outputs) for node_id in node_ids]

    proposals: SparseSplitProposals = arena.proposals
    bin_features = proposals.bin_feature_ids()
    idx = torch.as_tensor(list(node_ids), dtype=torch.int64, device=arena.device)
    cumulative = arena.data[idx]
    node_gradient = torch.as_tensor(tree.gradient[list(node_ids)], device=arena.device)
    node_hessian = torch.as_tensor(tree.hessian[list(node_ids)], device=arena.device)

    gains = split_gains(cumulative, node_gradient, node_hessian, alpha)
    # argmax returns the first maximal index on ties.
    best_bin = torch.argmax(gains, dim=1)
    best_gain = gains.gather(1, best_bin[:, None]).squeeze(1)

    best_gain_np = best_gain.cpu().numpy()
    best_bin_np = best_bin.cpu().numpy()
    left = cumulative[torch.arange(len(node_ids), device=arena.device), best_bin].cpu().numpy()

    decisions: list[SplitDecision] = []
    for pos, node_id in enumerate(node_ids):
        gain = float(best_gain_np[pos])
        if not gain > EPS:
            decisions.append(_no_split(node_id, num_outputs))
            continue
        bin_index = int(best_bin_np[pos])
        left_gradient = left[pos, :, GRAD].astype(np.float64)
        left_hessian = left[pos, :, HESS].astype(np.float64)
        right_gradient = tree.gradient[node_id] - left_gradient
        right_hessian = tree.hessian[node_id] - left_hessian
        if left_hessian[0] <= 0.0 or right_hessian[0] <= 0.0:
            decisions.append(_no_split(node_id, num_outputs))
            continue
        decisions.append(
            SplitDecision(
                node_id=node_id,
                feature=int(bin_features[bin_index]),
                bin_index=bin_index,
                split_value=float(proposals.split_proposals[bin_index]),
                gain=gain,
                left_gradient=left_gradient,
                right_gradient=right_gradient,
                left_hessian=left_hessian,
                right_hessian=right_hessian,
            )
        )
    return decisions


def perform_best_split(
    arena: HistogramArena,
    tree: Tree,
    node_ids: Sequence[int],
    alpha: float,
) -> list[SplitDecision]:
    """Commit the accepted splits of ``node_ids`` into ``tree``."""
    decisions = find_best_splits(arena, tree, node_ids, alpha)
    for dec in decisions:
        if not dec.is_split:
            continue
        tree.add_split(
            dec.node_id,
            dec.feature,
            dec.split_value,
            calculate_leaf_value(dec.left_gradient, dec.left_hessian, alpha),
            calculate_leaf_value(dec.right_gradient, dec.right_hessian, alpha),
            dec.gain,
            dec.left_gradient,
            dec.right_gradient,
            dec.left_hessian,
            dec.right_hessian,
        )
    return decisions
