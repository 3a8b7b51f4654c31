"""
Value types of the hierarchy views: positions, ranges, locations, nodes and the tree item descriptors
handed to the host.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Self
from urllib.parse import unquote, urlparse

from sensai.util.string import ToStringMixin


@dataclass(frozen=True)
class Position:
    line: int
    character: int

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Self:
        return cls(line=int(data["line"]), character=int(data["character"]))

    def to_lsp(self) -> dict[str, int]:
        return {"line": self.line, "character": self.character}


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Self:
        return cls(start=Position.from_lsp(data["start"]), end=Position.from_lsp(data["end"]))

    def to_lsp(self) -> dict[str, Any]:
        return {"start": self.start.to_lsp(), "end": self.end.to_lsp()}


@dataclass(frozen=True)
class Location:
    uri: str
    range: Range

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Self:
        return cls(uri=data["uri"], range=Range.from_lsp(data["range"]))

    def to_lsp(self) -> dict[str, Any]:
        return {"uri": self.uri, "range": self.range.to_lsp()}

    @property
    def file_name(self) -> str:
        return PurePosixPath(unquote(urlparse(self.uri).path)).name


class _Unexpanded:
    """
    Marker for children that have not been fetched yet.
    """

    _instance = None

    def __new__(cls):  # type: ignore[no-untyped-def]
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNEXPANDED"

    def __bool__(self) -> bool:
        return False


UNEXPANDED = _Unexpanded()


class HierarchyNode(ToStringMixin):
    """
    A node of a hierarchy tree.

    Every appearance of a symbol in the tree is a separate node instance, even if the server ids are equal;
    the node instance (not the id) owns the cached children. Nodes do not know their parent.
    """

    def __init__(self, node_id: str, name: str, location: Location, num_children: int | None = None) -> None:
        self.id = node_id
        self.name = name
        self.location = location
        self.num_children = num_children
        self.children: list[Self] | _Unexpanded = UNEXPANDED
        self.failed = False

    def _tostring_includes(self) -> list[str]:
        return ["id", "name", "num_children"]

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> Self:
        return cls(
            node_id=str(data["id"]),
            name=data.get("name", ""),
            location=Location.from_lsp(data["location"]),
            num_children=data.get("numChildren"),
        )

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Self:
        """
        Builds a node (and the levels of children contained in the payload) from an engine response.
        Children present in the payload are stored as fetched; a node reported with zero children
        is stored as an already expanded leaf.
        """
        node = cls._from_payload(data)
        raw_children = data.get("children") or []
        if raw_children:
            node.children = [cls.from_payload(child) for child in raw_children]
        elif node.num_children == 0:
            node.children = []
        return node

    def is_expanded(self) -> bool:
        return self.children is not UNEXPANDED

    def may_have_children(self) -> bool:
        if self.is_expanded():
            return len(self.children) > 0  # type: ignore[arg-type]
        return self.num_children is None or self.num_children > 0


class CollapsibleState(Enum):
    NONE = 0
    COLLAPSED = 1
    EXPANDED = 2


@dataclass
class TreeItem:
    """
    Presentation descriptor of a node, consumed by the host's tree view.
    """

    label: str
    description: str = ""
    collapsible_state: CollapsibleState = CollapsibleState.NONE
    icon_path: dict[str, str] | None = None
    command: str | None = None
    command_arguments: list[Any] = field(default_factory=list)
    context_value: str | None = None
