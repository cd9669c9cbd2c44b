"""
closure_tree: ordered, polymorphic trees backed by a closure table.

Core exports:
    ClosureTree       - facade owning the engine and units of work
    TypedTree         - a ClosureTree bound to one type tag
    TreeSettings      - pydantic configuration (load_settings for YAML)
    TreeNode, NewNode - immutable snapshot / unattached node

Components (usable directly with your own Session):
    EdgeStore, OrderAllocator, NodeRepository, TraversalEngine, PathResolver
"""

from .edges import EdgeStore
from .exceptions import ClosureTreeError, CycleError, NotFoundError, OrderConflictError
from .integrity import IntegrityReport, check_integrity
from .models import NewNode, NodeRef, NodeState, TreeNode
from .ordering import OrderAllocator
from .paths import PathResolver
from .repository import NodeRepository
from .settings import TreeSettings, load_settings
from .traversal import TraversalEngine
from .tree import ClosureTree, TypedTree

__all__ = [
    "ClosureTree",
    "ClosureTreeError",
    "CycleError",
    "EdgeStore",
    "IntegrityReport",
    "NewNode",
    "NodeRef",
    "NodeRepository",
    "NodeState",
    "NotFoundError",
    "OrderAllocator",
    "OrderConflictError",
    "PathResolver",
    "TraversalEngine",
    "TreeNode",
    "TreeSettings",
    "TypedTree",
    "check_integrity",
    "load_settings",
    "__version__",
]

__version__ = "0.1.0"
