"""Fit a small squared-loss ensemble of histree trees on synthetic data.

Compares single-worker growth with row-sharded growth and reports how far
their predictions drift apart.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

import numpy as np
import pandas as pd
from sklearn.datasets import make_regression
from sklearn.metrics import r2_score
from sklearn.model_selection import train_test_split

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from histree import Tree, TreeConfig, build_tree


N_SAMPLES = 4000
N_FEATURES = 20
SEED = 123

N_TREES = 50
MAX_DEPTH = 5
LEARNING_RATE = 0.1


@dataclass
class BenchmarkResult:
    name: str
    fit_time: float
    predict_time: float
    r2: float


def generate_data() -> tuple[np.ndarray, np.ndarray]:
    X, y = make_regression(
        n_samples=N_SAMPLES,
        n_features=N_FEATURES,
        noise=10.0,
        random_state=SEED,
    )
    return X.astype(np.float32), y.astype(np.float64)


def fit_ensemble(X: np.ndarray, y: np.ndarray, config: TreeConfig, num_workers: int) -> tuple[float, List[Tree]]:
    """Boost ``N_TREES`` trees on the squared loss ``0.5 * (pred - y)^2``."""
    base = float(y.mean())
    pred = np.full_like(y, base)
    hess = np.ones_like(y)
    trees: List[Tree] = []
    for round_idx in range(N_TREES):
        grad = pred - y
        round_config = TreeConfig(
            max_depth=config.max_depth,
            alpha=config.alpha,
            split_samples=config.split_samples,
            seed=config.seed + round_idx,
            histogram_mode=config.histogram_mode,
            sibling_policy=config.sibling_policy,
        )
        tree = build_tree(X, grad, hess, round_config, num_workers=num_workers)
        pred += LEARNING_RATE * tree.predict(X)[:, 0]
        trees.append(tree)
    return base, trees


def predict_ensemble(X: np.ndarray, base: float, trees: List[Tree]) -> np.ndarray:
    pred = np.full(X.shape[0], base, dtype=np.float64)
    for tree in trees:
        pred += LEARNING_RATE * tree.predict(X)[:, 0]
    return pred


def benchmark(
    name: str,
    fit_fn: Callable[[], tuple[float, List[Tree]]],
    X_test: np.ndarray,
    y_true: np.ndarray,
) -> tuple[BenchmarkResult, np.ndarray]:
    """Measure fit/predict time and compute R^2."""
    t0 = time.perf_counter()
    base, trees = fit_fn()
    fit_time = time.perf_counter() - t0

    t0 = time.perf_counter()
    preds = predict_ensemble(X_test, base, trees)
    predict_time = time.perf_counter() - t0

    r2 = float(r2_score(y_true, preds))
    result = BenchmarkResult(name=name, fit_time=fit_time, predict_time=predict_time, r2=r2)
    return result, preds


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    X, y = generate_data()
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=SEED)

    config = TreeConfig(max_depth=MAX_DEPTH, alpha=1.0, split_samples=256, seed=SEED)

    results: List[BenchmarkResult] = []
    predictions: List[np.ndarray] = []
    for num_workers in (1, 4):
        for mode in ("subtract", "rebuild"):
            mode_config = TreeConfig(
                max_depth=config.max_depth,
                alpha=config.alpha,
                split_samples=config.split_samples,
                seed=config.seed,
                histogram_mode=mode,
            )
            result, preds = benchmark(
                f"histree[{mode}, workers={num_workers}]",
                lambda: fit_ensemble(X_train, y_train, mode_config, num_workers),
                X_test,
                y_test,
            )
            results.append(result)
            predictions.append(preds)

    drift = max(float(np.abs(preds - predictions[0]).max()) for preds in predictions[1:])

    df = pd.DataFrame([r.__dict__ for r in results])
    print(df.to_string(index=False, float_format=lambda v: f"{v:0.4f}"))
    print(f"max prediction drift across layouts: {drift:.3e}")
