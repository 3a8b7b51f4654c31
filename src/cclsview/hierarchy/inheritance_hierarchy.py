"""
Type hierarchy on top of the ccls $ccls/inheritance request; children are derived types or, after switching
direction, base types.
"""

import logging
from typing import Any, Self

from overrides import override

from cclsview.constants import (
    CMD_CLOSE_INHERITANCE_HIERARCHY,
    CMD_INHERITANCE_USE_BASE,
    CMD_INHERITANCE_USE_DERIVED,
    METHOD_INHERITANCE,
)
from cclsview.hierarchy.hierarchy import Hierarchy
from cclsview.hierarchy.types import HierarchyNode, Location, Position
from cclsview.host import CommandCallback, HostWindow
from cclsview.rpc import RpcChannel

log = logging.getLogger(__name__)


class InheritanceHierarchyNode(HierarchyNode):
    def __init__(self, node_id: str, name: str, location: Location, num_children: int | None = None, kind: int = 0) -> None:
        super().__init__(node_id, name, location, num_children)
        self.kind = kind
        """the engine's symbol kind of the type (or function, for overrides)"""

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> Self:
        return cls(
            node_id=str(data["id"]),
            name=data.get("name", ""),
            location=Location.from_lsp(data["location"]),
            num_children=data.get("numChildren"),
            kind=int(data.get("kind", 0)),
        )


class InheritanceHierarchy(Hierarchy[InheritanceHierarchyNode]):
    node_class = InheritanceHierarchyNode
    context_key = "extension.ccls.inheritanceHierarchyVisible"
    close_command = CMD_CLOSE_INHERITANCE_HIERARCHY

    def __init__(self, channel: RpcChannel, window: HostWindow | None = None, qualified: bool = True) -> None:
        super().__init__(channel, window)
        self.qualified = qualified
        self.derived = True

    def _request_params(self, levels: int) -> dict[str, Any]:
        return {
            "derived": self.derived,
            "hierarchy": True,
            "levels": levels,
            "qualified": self.qualified,
        }

    @override
    async def _on_reveal(self, uri: str, position: Position) -> dict[str, Any] | None:
        params = self._request_params(levels=1)
        params["position"] = position.to_lsp()
        params["textDocument"] = {"uri": uri}
        return await self._channel.request(METHOD_INHERITANCE, params)  # type: ignore[return-value]

    @override
    async def _on_get_children(self, node: InheritanceHierarchyNode) -> list[dict[str, Any]] | None:
        params = self._request_params(levels=1)
        params["id"] = node.id
        params["kind"] = node.kind
        result = await self._channel.request(METHOD_INHERITANCE, params)
        if result is None:
            return None
        return result.get("children") or []  # type: ignore[union-attr]

    @override
    def commands(self) -> dict[str, CommandCallback]:
        commands = super().commands()
        commands[CMD_INHERITANCE_USE_BASE] = lambda: self.set_derived(False)
        commands[CMD_INHERITANCE_USE_DERIVED] = lambda: self.set_derived(True)
        return commands

    def set_derived(self, value: bool) -> None:
        """
        Switches between showing derived types (True) and base types (False).
        """
        self.derived = value
        log.info(f"Inheritance hierarchy now shows {'derived' if value else 'base'} types")
        if self.root is not None:
            self.invalidate(self.root)
