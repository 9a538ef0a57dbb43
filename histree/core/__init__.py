"""Core data structures and algorithms for level-wise tree growth."""

from .histogram import GRAD, HESS, HistogramArena, LevelPlan, plan_level, select_histogram_node
from .positions import EXCLUDED, initial_positions, update_positions
from .proposals import SparseSplitProposals, sample_rows, select_split_samples
from .split import EPS, SplitDecision, find_best_splits, perform_best_split, split_gains
from .tree import (
    Tree,
    TreeOutput,
    calculate_leaf_value,
    left_child,
    level_begin,
    nodes_in_level,
    parent,
    right_child,
)

__all__ = [
    "EPS",
    "EXCLUDED",
    "GRAD",
    "HESS",
    "HistogramArena",
    "LevelPlan",
    "SparseSplitProposals",
    "SplitDecision",
    "Tree",
    "TreeOutput",
    "calculate_leaf_value",
    "find_best_splits",
    "initial_positions",
    "left_child",
    "level_begin",
    "nodes_in_level",
    "parent",
    "perform_best_split",
    "plan_level",
    "right_child",
    "sample_rows",
    "select_histogram_node",
    "select_split_samples",
    "split_gains",
    "update_positions",
]
