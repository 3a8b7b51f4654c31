"""Hierarchy views (call and inheritance) backed by ccls requests."""

from .call_hierarchy import CallHierarchy, CallHierarchyItemProvider, CallHierarchyNode, CallType, group_by_id, merge_call_sites
from .hierarchy import Hierarchy
from .inheritance_hierarchy import InheritanceHierarchy, InheritanceHierarchyNode
from .types import UNEXPANDED, CollapsibleState, HierarchyNode, Location, Position, Range, TreeItem

__all__ = [
    "UNEXPANDED",
    "CallHierarchy",
    "CallHierarchyItemProvider",
    "CallHierarchyNode",
    "CallType",
    "CollapsibleState",
    "Hierarchy",
    "HierarchyNode",
    "InheritanceHierarchy",
    "InheritanceHierarchyNode",
    "Location",
    "Position",
    "Range",
    "TreeItem",
    "group_by_id",
    "merge_call_sites",
]
