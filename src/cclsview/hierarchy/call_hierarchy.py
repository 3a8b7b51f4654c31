"""
Call hierarchy on top of the ccls $ccls/call request.

Children of a node are its callers or, after switching direction, its callees. A function calling
another one from several lines yields several sibling results with the same id; these are merged into
a single displayed node carrying all call-site ranges.
"""

import logging
import os
from collections.abc import Iterable
from enum import IntEnum
from typing import Any, Self, TypeVar

from overrides import override

from cclsview.constants import (
    CCLSVIEW_ICON_DIR,
    CMD_CALL_USE_CALLEES,
    CMD_CALL_USE_CALLERS,
    CMD_CLOSE_CALL_HIERARCHY,
    METHOD_CALL,
)
from cclsview.hierarchy.hierarchy import Hierarchy
from cclsview.hierarchy.types import HierarchyNode, Location, Position, Range, TreeItem
from cclsview.host import CommandCallback, HostWindow
from cclsview.rpc import RpcChannel

log = logging.getLogger(__name__)

SYMBOL_KIND_FUNCTION = 12

T = TypeVar("T", bound=HierarchyNode)


class CallType(IntEnum):
    NORMAL = 0
    BASE = 1
    DERIVED = 2
    ALL = BASE | DERIVED
    """normal, base and derived calls"""


class CallHierarchyNode(HierarchyNode):
    def __init__(
        self,
        node_id: str,
        name: str,
        location: Location,
        num_children: int | None = None,
        call_type: CallType = CallType.NORMAL,
        use_range: Range | None = None,
    ) -> None:
        super().__init__(node_id, name, location, num_children)
        self.call_type = call_type
        self.use_range = use_range if use_range is not None else location.range
        self.use_ranges: list[Range] = [self.use_range]
        """the call sites represented by this node (more than one after merging siblings with equal ids)"""

    def _tostring_includes(self) -> list[str]:
        return ["id", "name", "call_type", "use_ranges"]

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> Self:
        location = Location.from_lsp(data["location"])
        use_range = data.get("useRange")
        return cls(
            node_id=str(data["id"]),
            name=data.get("name", ""),
            location=location,
            num_children=data.get("numChildren"),
            call_type=CallType(data.get("callType", CallType.NORMAL)),
            use_range=Range.from_lsp(use_range) if use_range else None,
        )


def group_by_id(nodes: Iterable[T]) -> list[list[T]]:
    """
    Groups nodes by id. Groups are ordered by the first occurrence of their id and keep the
    original order of their members.
    """
    groups: dict[str, list[T]] = {}
    for node in nodes:
        groups.setdefault(node.id, []).append(node)
    return list(groups.values())


def merge_call_sites(nodes: Iterable[CallHierarchyNode]) -> list[CallHierarchyNode]:
    """
    Merges sibling nodes with equal ids into their first occurrence, which receives the use ranges
    of all members in their original order. Lists without duplicate ids come back unchanged.
    """
    merged = []
    for group in group_by_id(nodes):
        head = group[0]
        head.use_ranges = [r for member in group for r in member.use_ranges]
        merged.append(head)
    return merged


class CallHierarchy(Hierarchy[CallHierarchyNode]):
    node_class = CallHierarchyNode
    context_key = "extension.ccls.callHierarchyVisible"
    close_command = CMD_CLOSE_CALL_HIERARCHY

    def __init__(self, channel: RpcChannel, window: HostWindow | None = None, qualified: bool = True) -> None:
        super().__init__(channel, window)
        self.qualified = qualified
        self.use_callee = False
        self._base_icon = {
            "dark": os.path.join(CCLSVIEW_ICON_DIR, "base-dark.svg"),
            "light": os.path.join(CCLSVIEW_ICON_DIR, "base-light.svg"),
        }
        self._derived_icon = {
            "dark": os.path.join(CCLSVIEW_ICON_DIR, "derived-dark.svg"),
            "light": os.path.join(CCLSVIEW_ICON_DIR, "derived-light.svg"),
        }

    def _request_params(self, levels: int) -> dict[str, Any]:
        return {
            "callType": int(CallType.ALL),
            "callee": self.use_callee,
            "hierarchy": True,
            "levels": levels,
            "qualified": self.qualified,
        }

    @override
    async def _on_reveal(self, uri: str, position: Position) -> dict[str, Any] | None:
        params = self._request_params(levels=2)
        params["position"] = position.to_lsp()
        params["textDocument"] = {"uri": uri}
        return await self._channel.request(METHOD_CALL, params)  # type: ignore[return-value]

    @override
    async def _on_get_children(self, node: CallHierarchyNode) -> list[dict[str, Any]] | None:
        params = self._request_params(levels=1)
        params["id"] = node.id
        result = await self._channel.request(METHOD_CALL, params)
        if result is None:
            return None
        return result.get("children") or []  # type: ignore[union-attr]

    @override
    def _on_children_fetched(self, children: list[CallHierarchyNode]) -> list[CallHierarchyNode]:
        return merge_call_sites(children)

    @override
    def _on_tree_item(self, item: TreeItem, node: CallHierarchyNode) -> None:
        if node.call_type == CallType.BASE:
            item.icon_path = self._base_icon
        elif node.call_type == CallType.DERIVED:
            item.icon_path = self._derived_icon
        if len(node.use_ranges) > 1:
            item.description = f"{item.description} ({len(node.use_ranges)} call sites)"

    @override
    def commands(self) -> dict[str, CommandCallback]:
        commands = super().commands()
        commands[CMD_CALL_USE_CALLERS] = lambda: self.set_callee(False)
        commands[CMD_CALL_USE_CALLEES] = lambda: self.set_callee(True)
        return commands

    def set_callee(self, value: bool) -> None:
        """
        Switches between showing callers (False) and callees (True). Already expanded children of the root
        are dropped, so that the next expansion is made in the new direction.
        """
        self.use_callee = value
        log.info(f"Call hierarchy now shows {'callees' if value else 'callers'}")
        if self.root is not None:
            self.invalidate(self.root)


class CallHierarchyItemProvider:
    """
    Answers the editor's built-in call hierarchy requests (prepare, incoming calls, outgoing calls)
    with LSP-shaped items. The engine id of a symbol travels in the item's data field.
    """

    def __init__(self, channel: RpcChannel, qualified: bool = True) -> None:
        self._channel = channel
        self.qualified = qualified

    @staticmethod
    def to_item(node: CallHierarchyNode) -> dict[str, Any]:
        range_ = node.location.range.to_lsp()
        return {
            "name": node.name,
            "kind": SYMBOL_KIND_FUNCTION,
            "detail": "",
            "uri": node.location.uri,
            "range": range_,
            "selectionRange": range_,
            "data": {"id": node.id},
        }

    async def _request(self, params: dict[str, Any]) -> CallHierarchyNode | None:
        params.update({"callType": int(CallType.ALL), "hierarchy": True})
        result = await self._channel.request(METHOD_CALL, params)
        if not result:
            return None
        return CallHierarchyNode.from_payload(result)  # type: ignore[arg-type]

    async def prepare(self, uri: str, position: Position) -> dict[str, Any] | None:
        node = await self._request(
            {"callee": True, "levels": 0, "position": position.to_lsp(), "qualified": True, "textDocument": {"uri": uri}}
        )
        return self.to_item(node) if node is not None else None

    async def _get_children(self, item: dict[str, Any], callee: bool) -> list[CallHierarchyNode]:
        node = await self._request({"callee": callee, "id": item["data"]["id"], "levels": 1, "qualified": self.qualified})
        if node is None or not node.is_expanded():
            return []
        return list(node.children)  # type: ignore[arg-type]

    async def incoming_calls(self, item: dict[str, Any]) -> list[dict[str, Any]]:
        children = await self._get_children(item, callee=False)
        return [
            {"from": self.to_item(group[0]), "fromRanges": [member.use_range.to_lsp() for member in group]}
            for group in group_by_id(children)
        ]

    async def outgoing_calls(self, item: dict[str, Any]) -> list[dict[str, Any]]:
        children = await self._get_children(item, callee=True)
        return [{"to": self.to_item(child), "fromRanges": []} for child in children]
