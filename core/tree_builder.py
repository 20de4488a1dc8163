#!/usr/bin/env python3
"""
Tree Builder
Turns a flat node list into a nested, numerically sorted tree.
"""

from typing import Dict, List, Optional

from core.models import Node, TreeNode
from core.oid import canonical_key, canonicalize, oid_sort_key
from utils.logger import get_logger

MIB2_ARC = "1.3.6.1.2.1"
ENTERPRISES_ARC = "1.3.6.1.4.1"
GROUPING_ARCS = (MIB2_ARC, ENTERPRISES_ARC)


def grouped_parent(oid: str, parent_oid: Optional[str]) -> Optional[str]:
    """
    Parent to use for `oid` in the tree.

    Nodes exactly one arc below mib-2 or enterprises always hang off that
    arc, whatever the compiler reported.
    """
    parts = canonicalize(oid)
    for arc in GROUPING_ARCS:
        arc_parts = canonicalize(arc)
        if len(parts) == len(arc_parts) + 1 and parts[:len(arc_parts)] == arc_parts:
            return arc
    return parent_oid


class TreeBuilder:
    """Pure transform from nodes to TreeNode roots."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def build(self, nodes: List[Node]) -> List[TreeNode]:
        # Arena keyed by canonical OID; first occurrence wins
        arena: Dict[str, TreeNode] = {}
        for node in nodes:
            key = canonical_key(node.oid)
            if key and key not in arena:
                arena[key] = TreeNode(node=node)

        parents: Dict[str, Optional[str]] = {}
        for key, tree_node in arena.items():
            parent = grouped_parent(key, tree_node.node.parent_oid)
            parent_key = canonical_key(parent)
            parents[key] = parent_key if parent_key and parent_key != key else None

        roots: List[TreeNode] = []
        promoted = 0
        for key, tree_node in arena.items():
            parent_key = parents[key]
            if parent_key is None:
                roots.append(tree_node)
            elif parent_key not in arena or self._closes_cycle(key, parents):
                roots.append(tree_node)
                promoted += 1
            else:
                arena[parent_key].children.append(tree_node)

        if promoted:
            self.logger.debug(f"Promoted {promoted} node(s) with missing parents to roots")

        self.sort_tree(roots)
        return roots

    @staticmethod
    def _closes_cycle(key: str, parents: Dict[str, Optional[str]]) -> bool:
        """True when following parents from `key` leads back to `key`."""
        visited = {key}
        current = parents.get(key)
        while current is not None and current in parents:
            if current in visited:
                return current == key
            visited.add(current)
            current = parents.get(current)
        return False

    def sort_tree(self, roots: List[TreeNode]) -> None:
        """Sort every sibling list in place, depth first."""
        stack = [roots]
        while stack:
            siblings = stack.pop()
            siblings.sort(key=lambda t: oid_sort_key(t.node.oid))
            stack.extend(t.children for t in siblings if t.children)


def count_nodes(roots: List[TreeNode]) -> int:
    total = 0
    stack = list(roots)
    while stack:
        current = stack.pop()
        total += 1
        stack.extend(current.children)
    return total


def tree_to_dict(roots: List[TreeNode]) -> List[Dict]:
    return [root.to_dict() for root in roots]
