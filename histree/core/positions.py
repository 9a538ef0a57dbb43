"""Row-to-node assignment maintained across tree levels."""

from __future__ import annotations

import numpy as np

from .tree import Tree

EXCLUDED = -1


def initial_positions(num_rows: int) -> np.ndarray:
    """Every local row starts at the root."""
    return np.zeros(num_rows, dtype=np.int32)


def update_positions(depth: int, tree: Tree, positions: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Move rows from their level ``depth - 1`` node to its child, in place.

    Rows whose node stayed a leaf (or that were already excluded) become
    ``EXCLUDED``; the others go left when ``x <= split_value``.
    """
    if depth == 0 or positions.size == 0:
        return positions
    active = np.flatnonzero(positions >= 0)
    nodes = positions[active].astype(np.int64)
    feature = tree.feature[nodes]
    leaf = feature == -1
    positions[active[leaf]] = EXCLUDED

    active = active[~leaf]
    nodes = nodes[~leaf]
    values = X[active, feature[~leaf], 0]
    go_left = values <= tree.split_value[nodes]
    positions[active] = np.where(go_left, 2 * nodes + 1, 2 * nodes + 2)
    return positions
