"""End-to-end tree growth across worker layouts and histogram policies."""

from __future__ import annotations

import json
import logging

import numpy as np
import pandas as pd
import pytest

from histree import TreeBuilder, TreeConfig, build_tree, grow_tree
from histree.core.tree import left_child, right_child
from histree.data import RowShard, as_tree_inputs


def make_dataset(seed: int = 42, n_rows: int = 240, n_features: int = 5, n_outputs: int = 1):
    """Integer-valued gradients/Hessians keep every reduction exact."""
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n_rows, n_features)).astype(np.float32)
    g = rng.integers(-4, 5, size=(n_rows, n_outputs)).astype(np.float64)
    h = rng.integers(1, 3, size=(n_rows, n_outputs)).astype(np.float64)
    return X, g, h


def make_regression(seed: int = 0, n_rows: int = 300, n_features: int = 6):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n_rows, n_features))
    y = np.sin(X[:, 0]) + 0.5 * (X[:, 1] > 0.3) + 0.05 * rng.standard_normal(n_rows)
    return X, y


def tree_arrays(tree):
    out = tree.to_output()
    return out.feature, out.split_value, out.gain, out.leaf_value, out.hessian


def assert_same_tree(a, b):
    for left, right in zip(tree_arrays(a), tree_arrays(b)):
        np.testing.assert_array_equal(left, right)


def test_four_row_scenario_end_to_end():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    g = np.array([-1.0, -1.0, 1.0, 1.0])
    config = TreeConfig(max_depth=1, alpha=0.0, split_samples=4, seed=3)
    tree = build_tree(X, g, np.ones(4), config)

    assert tree.max_nodes == 3
    np.testing.assert_allclose(tree.gradient[0], [0.0])
    np.testing.assert_allclose(tree.hessian[0], [4.0])
    assert tree.leaf_value[0, 0] == pytest.approx(0.0)
    assert tree.feature[0] == 0
    assert tree.split_value[0] == 2.0
    assert tree.gain[0] == pytest.approx(2.0, rel=1e-4)
    np.testing.assert_allclose(tree.leaf_value[1:, 0], [1.0, -1.0])
    np.testing.assert_allclose(tree.gradient[1:, 0], [-2.0, 2.0])
    np.testing.assert_allclose(tree.hessian[1:, 0], [2.0, 2.0])


def test_identical_rows_stay_a_single_leaf():
    X = np.full((10, 3), 1.25)
    rng = np.random.default_rng(1)
    g = rng.normal(size=10)
    h = rng.uniform(0.5, 1.5, size=10)
    tree = build_tree(X, g, h, TreeConfig(max_depth=4, alpha=0.7))
    assert tree.is_leaf(0)
    assert tree.num_leaves == 1
    assert tree.leaf_value[0, 0] == pytest.approx(-g.sum() / (h.sum() + 0.7))


@pytest.mark.parametrize("num_workers", [2, 3, 8])
def test_worker_layout_does_not_change_tree(num_workers: int):
    X, g, h = make_dataset(seed=7)
    config = TreeConfig(max_depth=4, alpha=0.5, split_samples=64, seed=11)
    single = build_tree(X, g, h, config)
    sharded = build_tree(X, g, h, config, num_workers=num_workers)
    assert_same_tree(single, sharded)


def test_every_worker_grows_the_same_tree():
    from histree.comm import run_spmd
    from histree.data import partition_rows

    X, g, h = make_dataset(seed=8, n_outputs=2)
    X_np, g_np, h_np = as_tree_inputs(X, g, h)
    config = TreeConfig(max_depth=3, alpha=1.0, split_samples=50, seed=2)
    shards = partition_rows(X_np, g_np, h_np, 4)

    def worker(comm, shard):
        return grow_tree(
            shard.X, shard.gradients, shard.hessians, config,
            comm=comm, row_start=shard.row_start, dataset_rows=X_np.shape[0],
        )

    trees = run_spmd(worker, shards)
    for tree in trees[1:]:
        assert_same_tree(trees[0], tree)


@pytest.mark.parametrize(
    "n_rows, split_samples, num_workers",
    [(200, 32, 2), (200, 32, 3), (8, 8, 2), (9, 64, 4)],
)
def test_workers_infer_dataset_rows_from_shards(n_rows: int, split_samples: int, num_workers: int):
    from histree.comm import run_spmd
    from histree.data import partition_rows

    X, g, h = make_dataset(seed=13, n_rows=n_rows)
    X_np, g_np, h_np = as_tree_inputs(X, g, h)
    config = TreeConfig(max_depth=3, alpha=0.5, split_samples=split_samples, seed=4)

    def worker(comm, shard):
        return grow_tree(
            shard.X, shard.gradients, shard.hessians, config,
            comm=comm, row_start=shard.row_start,
        )

    trees = run_spmd(worker, partition_rows(X_np, g_np, h_np, num_workers))
    expected = build_tree(X, g, h, config)
    for tree in trees:
        assert_same_tree(expected, tree)


@pytest.mark.parametrize("seed", [3, 7, 19])
def test_split_determinism(seed: int):
    X, y = make_regression(seed=seed)
    config = TreeConfig(max_depth=5, alpha=1.0, split_samples=32, seed=seed)
    first = build_tree(X, -y, np.ones_like(y), config)
    second = build_tree(X, -y, np.ones_like(y), config)
    assert_same_tree(first, second)


def test_subtract_matches_rebuild():
    X, g, h = make_dataset(seed=21, n_outputs=2)
    base = dict(max_depth=5, alpha=0.25, split_samples=80, seed=5)
    subtract = build_tree(X, g, h, TreeConfig(histogram_mode="subtract", **base))
    rebuild = build_tree(X, g, h, TreeConfig(histogram_mode="rebuild", **base))
    left_first = build_tree(X, g, h, TreeConfig(sibling_policy="left", **base))
    assert_same_tree(subtract, rebuild)
    assert_same_tree(subtract, left_first)


def test_structure_invariants():
    X, y = make_regression(seed=4, n_rows=500)
    config = TreeConfig(max_depth=4, alpha=0.1, split_samples=128, seed=1)
    tree = build_tree(X, -y, np.ones_like(y), config)

    assert tree.max_nodes == 2 ** 5 - 1
    assert not tree.is_leaf(0)
    assert tree.num_leaves <= 2 ** config.max_depth
    for node_id in tree.reachable_nodes():
        if tree.is_leaf(node_id):
            continue
        left, right = left_child(node_id), right_child(node_id)
        assert right < tree.max_nodes
        assert tree.hessian[left, 0] > 0 and tree.hessian[right, 0] > 0
        np.testing.assert_allclose(
            tree.hessian[left] + tree.hessian[right], tree.hessian[node_id], rtol=1e-9
        )
        assert tree.gain[node_id] > 0
    # Nodes at the last level can never be split.
    assert all(tree.is_leaf(n) for n in range(2 ** 4 - 1, tree.max_nodes))


def test_leaf_values_fit_squared_loss():
    X, y = make_regression(seed=9)
    tree = build_tree(X, -y, np.ones_like(y), TreeConfig(max_depth=3, alpha=1e-3, split_samples=300))
    preds = tree.predict(X)[:, 0]
    assert preds.shape == y.shape
    assert np.mean((y - preds) ** 2) < np.mean((y - y.mean()) ** 2)

    leaves = tree.apply(X)
    for leaf in np.unique(leaves):
        rows = leaves == leaf
        assert tree.is_leaf(int(leaf))
        assert preds[rows][0] == pytest.approx(y[rows].sum() / (rows.sum() + 1e-3))


def test_multi_output_and_float32_features():
    X, g, h = make_dataset(seed=30, n_outputs=3)
    tree = build_tree(X, g, h, TreeConfig(max_depth=3, alpha=1.0))
    out = tree.to_output()
    assert out.leaf_value.shape == (15, 3)
    assert out.hessian.shape == (15, 3)
    assert out.split_value.shape == (15,)
    np.testing.assert_allclose(out.hessian[0], h.sum(axis=0))
    np.testing.assert_allclose(out.leaf_value[0], -g.sum(axis=0) / (h.sum(axis=0) + 1.0))


def test_accepts_dataframe():
    X, y = make_regression(seed=2, n_rows=120, n_features=4)
    df = pd.DataFrame(X, columns=[f"f{i}" for i in range(X.shape[1])])
    config = TreeConfig(max_depth=2, split_samples=64, seed=7)
    assert_same_tree(
        build_tree(df, -y, np.ones_like(y), config), build_tree(X, -y, np.ones_like(y), config)
    )


def test_zero_depth_tree_is_root_leaf():
    X, g, h = make_dataset(seed=1)
    tree = build_tree(X, g, h, TreeConfig(max_depth=0))
    assert tree.max_nodes == 1
    assert tree.is_leaf(0)


def test_more_workers_than_rows():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    g = np.array([-1.0, -1.0, 1.0, 1.0])
    config = TreeConfig(max_depth=2, alpha=0.0, split_samples=4)
    assert_same_tree(build_tree(X, g, np.ones(4), config), build_tree(X, g, np.ones(4), config, num_workers=6))


@pytest.mark.parametrize(
    "shard_kwargs, message",
    [
        (dict(X=np.asfortranarray(np.ones((4, 2, 1)))), "row-major"),
        (dict(X=np.ones((4, 2))), r"\[rows, features, 1\]"),
        (dict(X=np.ones((4, 2, 1), dtype=np.int32)), "floating"),
        (dict(gradients=np.zeros((3, 1, 1))), "not aligned"),
        (dict(hessians=np.ones((4, 1, 2))), "same rows and outputs"),
        (dict(output_start=1), "outputs"),
    ],
)
def test_precondition_violations_are_fatal(shard_kwargs, message):
    fields = dict(X=np.ones((4, 2, 1)), gradients=np.zeros((4, 1, 1)), hessians=np.ones((4, 1, 1)))
    fields.update(shard_kwargs)
    with pytest.raises(ValueError, match=message):
        TreeBuilder(TreeConfig(max_depth=1)).grow(RowShard(**fields))


def test_dataset_rows_must_cover_shard():
    X, g, h = make_dataset(seed=1, n_rows=20)
    with pytest.raises(ValueError, match="dataset_rows"):
        grow_tree(X, g, h, TreeConfig(max_depth=1), row_start=10, dataset_rows=25)
    # Without dataset_rows a lone worker only knows its own 20 rows.
    with pytest.raises(ValueError, match="dataset_rows"):
        grow_tree(X, g, h, TreeConfig(max_depth=1), row_start=10)


def test_environment_overrides_histogram_policy(monkeypatch):
    monkeypatch.setenv("HISTREE_HIST_MODE", "REBUILD")
    monkeypatch.setenv("HISTREE_SIBLING_POLICY", "left")
    builder = TreeBuilder(TreeConfig())
    assert builder.config.histogram_mode == "rebuild"
    assert builder.config.sibling_policy == "left"

    monkeypatch.setenv("HISTREE_HIST_MODE", "sideways")
    with pytest.raises(ValueError, match="histogram_mode"):
        TreeBuilder(TreeConfig())


def test_level_logs_are_recorded_and_emitted(caplog):
    X, y = make_regression(seed=5)
    X_np, g, h = as_tree_inputs(X, -y, np.ones_like(y))
    builder = TreeBuilder(TreeConfig(max_depth=3, split_samples=100))
    with caplog.at_level(logging.INFO, logger="histree.builder"):
        tree = builder.grow(RowShard(X=X_np, gradients=g, hessians=h))

    logs = builder.level_logs
    assert [log["depth"] for log in logs] == list(range(len(logs)))
    assert logs[0]["nodes_active"] == 1
    assert logs[0]["nodes_scanned"] == 1 and logs[0]["nodes_subtracted"] == 0
    assert logs[0]["rows_active"] == X.shape[0]
    if len(logs) > 1:
        assert logs[1]["nodes_scanned"] == logs[1]["nodes_subtracted"] == logs[0]["nodes_split"]
    assert sum(log["nodes_split"] for log in logs) == tree.num_leaves - 1

    emitted = [json.loads(rec.getMessage()) for rec in caplog.records if rec.name == "histree.builder"]
    assert emitted == list(logs)
