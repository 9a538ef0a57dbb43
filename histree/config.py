"""Configuration objects for histree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True, slots=True)
class TreeConfig:
    """Hyper-parameters steering the growth of a single tree.

    Parameters
    ----------
    max_depth:
        Number of split levels grown below the root (depth 0). A tree of
        ``max_depth`` levels has capacity ``2 ** (max_depth + 1) - 1`` nodes.
    alpha:
        L2 regularisation added to Hessian sums when computing leaf values
        and split gains.
    split_samples:
        Number of rows sampled (with replacement) to build the per-feature
        candidate thresholds. When it is at least the dataset row count ``N``
        every row is used once instead, so the draft table reduced across
        workers is ``N`` rows wide and the thresholds are exact.
    seed:
        Seed for the row sampler. Every worker draws the same sample.
    max_nodes:
        Optional explicit node capacity. When given it must equal
        ``2 ** (max_depth + 1) - 1``.
    histogram_mode:
        Policy for deriving children histograms. ``"subtract"`` accumulates
        one child per split parent and derives its sibling as parent minus
        child, ``"rebuild"`` accumulates and scans both children.
    sibling_policy:
        Which child of a split parent is accumulated directly in
        ``"subtract"`` mode. ``"hessian"`` picks the child with the smaller
        Hessian mass (ties go left), ``"left"`` always picks the left child.
    device:
        Torch device identifier (``"cpu"`` or ``"cuda"``) for the histogram
        arena.
    """

    max_depth: int = 6
    alpha: float = 1.0
    split_samples: int = 256
    seed: int = 0
    max_nodes: int | None = None
    histogram_mode: Literal["subtract", "rebuild"] = "subtract"
    sibling_policy: Literal["hessian", "left"] = "hessian"
    device: str = "cpu"

    @property
    def node_capacity(self) -> int:
        return (1 << (self.max_depth + 1)) - 1

    def validate(self) -> None:
        """Raise ``ValueError`` when the scalars break the builder contract."""
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be non-negative, got {self.max_depth}")
        if self.alpha < 0:
            raise ValueError(f"alpha must be non-negative, got {self.alpha}")
        if self.split_samples < 1:
            raise ValueError(f"split_samples must be positive, got {self.split_samples}")
        if self.max_nodes is not None and self.max_nodes != self.node_capacity:
            raise ValueError(
                f"max_nodes ({self.max_nodes}) must equal 2^(max_depth+1)-1 "
                f"= {self.node_capacity}"
            )
        if self.histogram_mode not in {"subtract", "rebuild"}:
            raise ValueError(f"Unsupported histogram_mode: {self.histogram_mode}")
        if self.sibling_policy not in {"hessian", "left"}:
            raise ValueError(f"Unsupported sibling_policy: {self.sibling_policy}")
