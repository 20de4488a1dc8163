#!/usr/bin/env python3
"""
Data classes shared by the loader, repository and tree builder
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeKind(str, Enum):
    NODE = "node"
    SCALAR = "scalar"
    TABLE = "table"
    ROW = "row"
    COLUMN = "column"
    NOTIFICATION = "notification"
    GROUP = "group"
    COMPLIANCE = "compliance"
    UNKNOWN = "unknown"


ACCESS_VALUES = ("not-accessible", "accessible-for-notify", "read-only", "read-write")
STATUS_VALUES = ("current", "deprecated", "obsolete", "mandatory", "optional")


def normalize_access(value: Optional[str]) -> str:
    """Map compiler access strings onto the stored vocabulary ('' when absent)."""
    if not value:
        return ""
    text = str(value).strip().lower()
    if text in ("read-create", "write-only"):
        return "read-write"
    return text if text in ACCESS_VALUES else ""


def normalize_status(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip().lower()
    return text if text in STATUS_VALUES else ""


def clean_description(text: Optional[str]) -> str:
    """Trim every line, drop blank ones, join with newlines."""
    if not text:
        return ""
    lines = [line.strip() for line in str(text).splitlines()]
    return "\n".join(line for line in lines if line)


@dataclass
class Node:
    """Represents a single MIB object."""

    oid: str
    name: str
    parent_oid: Optional[str] = None
    kind: NodeKind = NodeKind.UNKNOWN
    syntax: str = ""
    access: str = ""
    status: str = ""
    description: str = ""
    module: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Node":
        kind = row.get("kind") or NodeKind.UNKNOWN.value
        try:
            kind = NodeKind(kind)
        except ValueError:
            kind = NodeKind.UNKNOWN
        return cls(
            oid=row["oid"],
            name=row.get("name") or "",
            parent_oid=row.get("parent_oid") or None,
            kind=kind,
            syntax=row.get("syntax") or "",
            access=row.get("access") or "",
            status=row.get("status") or "",
            description=row.get("description") or "",
            module=row.get("module") or "",
        )


@dataclass
class ModuleStats:
    node_count: int = 0
    scalar_count: int = 0
    table_count: int = 0
    column_count: int = 0
    type_count: int = 0


@dataclass
class ModuleSummary:
    """A module row with its decoded missing imports."""

    id: int
    name: str
    file_path: str = ""
    node_count: int = 0
    scalar_count: int = 0
    table_count: int = 0
    column_count: int = 0
    type_count: int = 0
    skipped_nodes: int = 0
    missing_imports: List[str] = field(default_factory=list)
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TreeNode:
    """Tree view of a Node; children are owned by their parent."""

    node: Node
    children: List["TreeNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.node.to_dict()
        data["children"] = [child.to_dict() for child in self.children]
        return data


# ============================================
# MERGE POLICY
# ============================================


def merge_field(existing: Any, incoming: Any) -> Any:
    """Keep the existing value unless the incoming one is non-empty."""
    if incoming is None or incoming == "":
        return existing
    return incoming


MERGED_FIELDS = ("name", "parent_oid", "kind", "syntax", "access", "status", "description", "module")


def merge_nodes(existing: Node, incoming: Node) -> Node:
    """Field-by-field merge of a re-scanned node into the stored one."""
    resolved = {f.name: getattr(existing, f.name) for f in fields(Node)}
    for name in MERGED_FIELDS:
        resolved[name] = merge_field(getattr(existing, name), getattr(incoming, name))
    # A re-scan that lost the kind must not downgrade a known one
    if incoming.kind == NodeKind.UNKNOWN and existing.kind != NodeKind.UNKNOWN:
        resolved["kind"] = existing.kind
    return Node(**resolved)
