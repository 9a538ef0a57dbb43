"""Complete-binary-tree node arrays grown level by level."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def left_child(node_id: int) -> int:
    return 2 * node_id + 1


def right_child(node_id: int) -> int:
    return 2 * node_id + 2


def parent(node_id: int) -> int:
    return (node_id - 1) // 2


def level_begin(depth: int) -> int:
    """Id of the first node at ``depth``."""
    return (1 << depth) - 1


def nodes_in_level(depth: int) -> int:
    return 1 << depth


def calculate_leaf_value(gradient, hessian, alpha: float):
    """Regularised Newton step ``-G / (H + alpha)``; works on scalars and arrays."""
    return -gradient / (hessian + alpha)


@dataclass(slots=True)
class TreeOutput:
    """Dense per-node arrays handed to the downstream model assembly."""

    leaf_value: np.ndarray
    feature: np.ndarray
    split_value: np.ndarray
    gain: np.ndarray
    hessian: np.ndarray


class Tree:
    """Fixed-capacity regression tree stored as per-node arrays.

    Node ``n`` has children ``2n+1`` and ``2n+2`` so every depth occupies a
    contiguous id range. ``feature == -1`` marks a leaf.
    """

    def __init__(self, max_nodes: int, num_outputs: int) -> None:
        if max_nodes <= 0 or num_outputs <= 0:
            raise ValueError("max_nodes and num_outputs must be positive")
        self.max_nodes = int(max_nodes)
        self.num_outputs = int(num_outputs)
        self.feature = np.full(self.max_nodes, -1, dtype=np.int32)
        self.split_value = np.zeros(self.max_nodes, dtype=np.float64)
        self.gain = np.zeros(self.max_nodes, dtype=np.float64)
        self.leaf_value = np.zeros((self.max_nodes, self.num_outputs), dtype=np.float64)
        self.gradient = np.zeros((self.max_nodes, self.num_outputs), dtype=np.float64)
        self.hessian = np.zeros((self.max_nodes, self.num_outputs), dtype=np.float64)

    def is_leaf(self, node_id: int) -> bool:
        return bool(self.feature[node_id] == -1)

    def set_root(self, gradient: np.ndarray, hessian: np.ndarray, alpha: float) -> None:
        """Store the globally reduced root sums and the root leaf value."""
        gradient = np.asarray(gradient, dtype=np.float64)
        hessian = np.asarray(hessian, dtype=np.float64)
        self.gradient[0] = gradient
        self.hessian[0] = hessian
        self.leaf_value[0] = calculate_leaf_value(gradient, hessian, alpha)

    def add_split(
        self,
        node_id: int,
        feature: int,
        split_value: float,
        left_leaf_value: np.ndarray,
        right_leaf_value: np.ndarray,
        gain: float,
        left_gradient: np.ndarray,
        right_gradient: np.ndarray,
        left_hessian: np.ndarray,
        right_hessian: np.ndarray,
    ) -> None:
        left, right = left_child(node_id), right_child(node_id)
        if right >= self.max_nodes:
            raise ValueError(f"node {node_id} has no room for children (max_nodes={self.max_nodes})")
        self.feature[node_id] = feature
        self.split_value[node_id] = split_value
        self.gain[node_id] = gain
        self.gradient[left] = left_gradient
        self.gradient[right] = right_gradient
        self.hessian[left] = left_hessian
        self.hessian[right] = right_hessian
        self.leaf_value[left] = left_leaf_value
        self.leaf_value[right] = right_leaf_value

    @property
    def num_leaves(self) -> int:
        return int(sum(1 for node_id in self.reachable_nodes() if self.is_leaf(node_id)))

    @property
    def depth(self) -> int:
        deepest = max(self.reachable_nodes())
        return int(np.log2(deepest + 1))

    def reachable_nodes(self) -> list[int]:
        """Ids of the root and every materialized descendant, in id order."""
        out: list[int] = []
        stack = [0]
        while stack:
            node_id = stack.pop()
            out.append(node_id)
            if not self.is_leaf(node_id):
                stack.extend((left_child(node_id), right_child(node_id)))
        return sorted(out)

    def apply(self, X: np.ndarray) -> np.ndarray:
        """Return the leaf id reached by every row of ``X`` (``[rows, F]`` or ``[rows, F, 1]``)."""
        X_arr = np.asarray(X)
        if X_arr.ndim == 3:
            X_arr = X_arr[:, :, 0]
        if X_arr.ndim != 2:
            raise ValueError("X must be 2D [rows, features] or 3D [rows, features, 1]")
        n_rows = X_arr.shape[0]
        node_idx = np.zeros(n_rows, dtype=np.int64)
        active = np.arange(n_rows, dtype=np.int64)
        while active.size > 0:
            nodes = node_idx[active]
            leaf_mask = self.feature[nodes] == -1
            if leaf_mask.any():
                active = active[~leaf_mask]
                nodes = nodes[~leaf_mask]
                if active.size == 0:
                    break
            feat = self.feature[nodes]
            go_left = X_arr[active, feat] <= self.split_value[nodes]
            node_idx[active] = np.where(go_left, 2 * nodes + 1, 2 * nodes + 2)
        return node_idx

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Leaf values ``[rows, outputs]`` for every row of ``X``."""
        return self.leaf_value[self.apply(X)]

    def to_output(self) -> TreeOutput:
        return TreeOutput(
            leaf_value=self.leaf_value.copy(),
            feature=self.feature.copy(),
            split_value=self.split_value.copy(),
            gain=self.gain.copy(),
            hessian=self.hessian.copy(),
        )
