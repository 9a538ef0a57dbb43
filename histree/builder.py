"""Grow one histogram tree per call across cooperating row-sharded workers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from time import perf_counter
from typing import Sequence

import numpy as np
import torch

from .comm import Communicator, LocalCommunicator, run_spmd
from .config import TreeConfig
from .core.histogram import HistogramArena, plan_level
from .core.positions import initial_positions, update_positions
from .core.proposals import SparseSplitProposals, select_split_samples
from .core.split import perform_best_split
from .core.tree import Tree
from .data import RowShard, as_tree_inputs, partition_rows


@dataclass(slots=True)
class LevelInstrumentation:
    depth: int = 0
    nodes_active: int = 0
    nodes_split: int = 0
    nodes_leaf: int = 0
    nodes_scanned: int = 0
    nodes_subtracted: int = 0
    rows_active: int = 0
    histogram_bins: int = 0
    position_ms: float = 0.0
    hist_ms: float = 0.0
    reduce_ms: float = 0.0
    scan_ms: float = 0.0
    split_ms: float = 0.0

    def to_dict(self) -> dict[str, int | float]:
        return {
            "depth": self.depth,
            "nodes_active": self.nodes_active,
            "nodes_split": self.nodes_split,
            "nodes_leaf": self.nodes_leaf,
            "nodes_scanned": self.nodes_scanned,
            "nodes_subtracted": self.nodes_subtracted,
            "rows_active": self.rows_active,
            "histogram_bins": self.histogram_bins,
            "position_ms": self.position_ms,
            "hist_ms": self.hist_ms,
            "reduce_ms": self.reduce_ms,
            "scan_ms": self.scan_ms,
            "split_ms": self.split_ms,
        }


def _elapsed_ms(start: float) -> float:
    return (perf_counter() - start) * 1000.0


class TreeBuilder:
    """Level-synchronous tree growth for one worker's shard of rows.

    All per-round state (tree, split proposals, histogram arena and row
    positions) lives for the duration of a single :meth:`grow` call.
    """

    def __init__(self, config: TreeConfig, comm: Communicator | None = None) -> None:
        env_mode = os.getenv("HISTREE_HIST_MODE")
        env_policy = os.getenv("HISTREE_SIBLING_POLICY")
        if env_mode or env_policy:
            config = replace(
                config,
                histogram_mode=(env_mode or config.histogram_mode).lower(),
                sibling_policy=(env_policy or config.sibling_policy).lower(),
            )
        config.validate()
        self.config = config
        self.comm = comm if comm is not None else LocalCommunicator()
        self._logger = logging.getLogger(__name__)
        self._level_logs: list[dict[str, object]] = []
        self.proposals: SparseSplitProposals | None = None

    @property
    def level_logs(self) -> Sequence[dict[str, object]]:
        return self._level_logs

    def grow(self, shard: RowShard, dataset_rows: int | None = None) -> Tree:
        """Grow a tree from ``shard``; ``dataset_rows`` is the global row count.

        When ``dataset_rows`` is omitted it is the sum of every worker's shard
        size, which costs one extra reduction.
        """
        shard.validate()
        cfg = self.config
        if dataset_rows is None:
            # Shards are contiguous and disjoint, so their sizes add up to the dataset.
            local_rows = np.array([shard.num_rows], dtype=np.int64)
            dataset_rows = int(self.comm.allreduce_sum(local_rows)[0])
        if dataset_rows < shard.row_stop:
            raise ValueError(
                f"dataset_rows ({dataset_rows}) is smaller than the shard end ({shard.row_stop})"
            )

        max_nodes = cfg.node_capacity
        num_outputs = shard.num_outputs
        tree = Tree(max_nodes, num_outputs)
        self._level_logs = []

        with torch.no_grad():
            proposals = select_split_samples(
                shard, cfg.split_samples, cfg.seed, dataset_rows, self.comm
            )
            self.proposals = proposals
            self._initialise_root(tree, shard)

            arena = HistogramArena(max_nodes, proposals, num_outputs, device=cfg.device)
            positions = initial_positions(shard.num_rows)

            for depth in range(cfg.max_depth):
                stats = LevelInstrumentation(depth=depth, histogram_bins=proposals.histogram_size)

                t0 = perf_counter()
                update_positions(depth, tree, positions, shard.X)
                stats.position_ms = _elapsed_ms(t0)

                plan = plan_level(depth, tree, cfg.histogram_mode, cfg.sibling_policy)
                if not plan.active:
                    break

                t0 = perf_counter()
                stats.rows_active = arena.accumulate(
                    depth,
                    positions,
                    plan.compute_mask(),
                    shard.X,
                    shard.gradients,
                    shard.hessians,
                )
                stats.hist_ms = _elapsed_ms(t0)

                t0 = perf_counter()
                arena.reduce(depth, self.comm)
                stats.reduce_ms = _elapsed_ms(t0)

                t0 = perf_counter()
                arena.scan_and_subtract(plan)
                stats.scan_ms = _elapsed_ms(t0)
                stats.nodes_scanned = len(plan.compute)
                stats.nodes_subtracted = len(plan.derive)

                t0 = perf_counter()
                decisions = perform_best_split(arena, tree, plan.active, cfg.alpha)
                stats.split_ms = _elapsed_ms(t0)
                stats.nodes_active = len(decisions)
                stats.nodes_split = sum(1 for dec in decisions if dec.is_split)
                stats.nodes_leaf = stats.nodes_active - stats.nodes_split

                level_log = stats.to_dict()
                level_log.update({
                    "rank": self.comm.rank,
                    "world_size": self.comm.world_size,
                    "histogram_mode": cfg.histogram_mode,
                    "sibling_policy": cfg.sibling_policy,
                    "seed": cfg.seed,
                })
                self._level_logs.append(level_log)
                if self._logger.isEnabledFor(logging.INFO):
                    self._logger.info(json.dumps(level_log))

                if stats.nodes_split == 0:
                    break
        return tree

    def _initialise_root(self, tree: Tree, shard: RowShard) -> None:
        local = np.stack(
            [
                shard.gradients[:, 0, :].sum(axis=0, dtype=np.float64),
                shard.hessians[:, 0, :].sum(axis=0, dtype=np.float64),
            ]
        )
        totals = self.comm.allreduce_sum(local)
        tree.set_root(totals[0], totals[1], self.config.alpha)


def grow_tree(
    X: np.ndarray,
    gradients: np.ndarray,
    hessians: np.ndarray,
    config: TreeConfig,
    *,
    comm: Communicator | None = None,
    row_start: int = 0,
    dataset_rows: int | None = None,
) -> Tree:
    """Per-worker entry point: grow a tree from the rows this worker owns.

    ``X`` is ``[rows, features, 1]`` (or ``[rows, features]``); gradients and
    Hessians are ``[rows, 1, outputs]`` (or ``[rows, outputs]`` / ``[rows]``).
    """
    X_np, g_np, h_np = as_tree_inputs(X, gradients, hessians)
    shard = RowShard(X=X_np, gradients=g_np, hessians=h_np, row_start=row_start)
    return TreeBuilder(config, comm).grow(shard, dataset_rows=dataset_rows)


def build_tree(
    X: np.ndarray,
    gradients: np.ndarray,
    hessians: np.ndarray,
    config: TreeConfig,
    *,
    num_workers: int = 1,
    timeout: float | None = None,
) -> Tree:
    """Grow a tree with ``num_workers`` in-process workers over contiguous row shards.

    Every worker ends with the same tree; rank 0's copy is returned.
    """
    X_np, g_np, h_np = as_tree_inputs(X, gradients, hessians)
    dataset_rows = int(X_np.shape[0])
    if num_workers == 1:
        shard = RowShard(X=X_np, gradients=g_np, hessians=h_np)
        return TreeBuilder(config).grow(shard, dataset_rows=dataset_rows)

    shards = partition_rows(X_np, g_np, h_np, num_workers)

    def worker(comm: Communicator, shard: RowShard) -> Tree:
        return TreeBuilder(config, comm).grow(shard, dataset_rows=dataset_rows)

    trees = run_spmd(worker, shards, timeout=timeout)
    return trees[0]
