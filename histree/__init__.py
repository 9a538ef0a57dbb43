"""histree: distributed level-wise histogram tree growth."""

from .builder import TreeBuilder, build_tree, grow_tree
from .config import TreeConfig
from .core import SparseSplitProposals, Tree, TreeOutput

__all__ = [
    "SparseSplitProposals",
    "Tree",
    "TreeBuilder",
    "TreeConfig",
    "TreeOutput",
    "build_tree",
    "grow_tree",
]
