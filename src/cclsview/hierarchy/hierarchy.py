"""
Generic, lazily expanded hierarchy tree backed by engine requests.

The engine addresses symbols by id; the tree built here holds a separate node instance per tree position,
so a recursive or mutually recursive symbol never turns the tree into a cycle. Children are fetched one
level at a time and cached on the node instance they belong to.
"""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

from cclsview.constants import CMD_HIERARCHY_GOTO
from cclsview.disposable import CallbackDisposable, Disposable
from cclsview.exceptions import ExpansionError, ResolutionError, RpcError
from cclsview.hierarchy.types import UNEXPANDED, CollapsibleState, HierarchyNode, Position, TreeItem
from cclsview.host import CommandCallback, HostWindow
from cclsview.rpc import RpcChannel

log = logging.getLogger(__name__)

NodeT = TypeVar("NodeT", bound=HierarchyNode)
ChangeListener = Callable[[HierarchyNode | None], None]


class Hierarchy(Generic[NodeT], ABC):
    """
    Tree of hierarchy nodes rooted at the most recently revealed symbol.

    Every structural change (new root, children written, invalidation, close) is reported to the
    listeners registered via on_did_change, passing the node from which the tree must be redrawn
    (None for the whole tree). Responses that arrive after the tree or the node they belong to
    has been reset are discarded.
    """

    node_class: type[NodeT]
    context_key: str
    """host context key that is true while the view shows a tree"""
    close_command: str

    def __init__(self, channel: RpcChannel, window: HostWindow | None = None) -> None:
        self._channel = channel
        self._window = window
        self.root: NodeT | None = None
        self._generation = 0
        self._reveal_token = 0
        self._epochs: "weakref.WeakKeyDictionary[NodeT, int]" = weakref.WeakKeyDictionary()
        self._in_flight: dict[NodeT, "asyncio.Task[list[NodeT]]"] = {}
        self._listeners: list[ChangeListener] = []

    @abstractmethod
    async def _on_reveal(self, uri: str, position: Position) -> dict[str, Any] | None:
        """
        Sends the request resolving the given position to a node payload.
        """

    @abstractmethod
    async def _on_get_children(self, node: NodeT) -> list[dict[str, Any]] | None:
        """
        Sends the request fetching one level of children of the given node and returns their payloads,
        or None if the engine no longer knows the node.
        """

    def _on_children_fetched(self, children: list[NodeT]) -> list[NodeT]:
        """
        Transforms one freshly fetched level of children before it is cached.
        """
        return children

    def _on_tree_item(self, item: TreeItem, node: NodeT) -> None:
        pass

    def commands(self) -> dict[str, CommandCallback]:
        """
        :return: the host commands offered by this hierarchy, by name
        """
        return {self.close_command: self.close}

    def on_did_change(self, listener: ChangeListener) -> Disposable:
        self._listeners.append(listener)
        return CallbackDisposable(lambda: self._listeners.remove(listener) if listener in self._listeners else None)

    def _fire(self, node: NodeT | None) -> None:
        for listener in list(self._listeners):
            listener(node)

    def _set_visible(self, visible: bool) -> None:
        if self._window is not None:
            self._window.set_context(self.context_key, visible)

    def _create_nodes(self, payload: dict[str, Any]) -> NodeT:
        node = self.node_class.from_payload(payload)
        self._prepare_fetched(node)
        return node

    def _prepare_fetched(self, node: NodeT) -> None:
        # payloads may contain more than one level; each level is transformed like a single expansion
        if node.is_expanded():
            node.children = self._on_children_fetched(node.children)  # type: ignore[arg-type]
            for child in node.children:
                self._prepare_fetched(child)

    def _walk(self, node: NodeT) -> Iterator[NodeT]:
        yield node
        if node.is_expanded():
            for child in node.children:  # type: ignore[union-attr]
                yield from self._walk(child)

    def _is_current(self, node: NodeT | None, generation: int, epoch: int) -> bool:
        if generation != self._generation:
            return False
        return node is None or self._epochs.get(node, 0) == epoch

    async def reveal(self, uri: str, position: Position) -> NodeT | None:
        """
        Resolves the symbol at the given position and makes it the new root, discarding the previous tree.

        :return: the new root, or None if another reveal or a close superseded this one while it was in flight
        :raises ResolutionError: if the engine cannot map the position to a symbol
        """
        self._reveal_token += 1
        token = self._reveal_token
        try:
            payload = await self._on_reveal(uri, position)
        except RpcError as e:
            if token != self._reveal_token:
                return None
            raise ResolutionError(f"Cannot resolve symbol at {uri}:{position.line}:{position.character}", cause=e) from e
        if token != self._reveal_token:
            log.debug(f"Discarding superseded reveal of {uri}:{position.line}:{position.character}")
            return None
        if not payload:
            raise ResolutionError(f"No symbol at {uri}:{position.line}:{position.character}")

        root = self._create_nodes(payload)
        self._generation += 1
        self.root = root
        self._epochs.clear()
        self._in_flight.clear()
        self._set_visible(True)
        self._fire(None)
        return root

    async def get_children(self, node: NodeT | None = None) -> list[NodeT]:
        """
        Returns the children of the given node, fetching them with a single request if the node
        has not been expanded yet. For node=None, returns the top level of the tree (the root).

        :raises ExpansionError: if the engine fails to provide the children; the node is marked as failed
            and is not fetched again until it is invalidated
        """
        if node is None:
            return [self.root] if self.root is not None else []
        if node.is_expanded():
            return list(node.children)  # type: ignore[arg-type]
        if node.failed:
            return []
        task = self._in_flight.get(node)
        if task is None:
            task = asyncio.ensure_future(self._expand(node, self._generation, self._epochs.get(node, 0)))
            self._in_flight[node] = task
        return list(await asyncio.shield(task))

    async def _expand(self, node: NodeT, generation: int, epoch: int) -> list[NodeT]:
        try:
            cause: Exception | None = None
            try:
                payloads = await self._on_get_children(node)
            except RpcError as e:
                payloads, cause = None, e
            if not self._is_current(node, generation, epoch):
                log.debug(f"Discarding stale children of {node}")
                return []
            if payloads is None:
                node.failed = True
                self._fire(node)
                raise ExpansionError(f"Cannot expand {node.name} (id {node.id})", node_id=node.id, cause=cause) from cause
            children = self._on_children_fetched([self._create_nodes(payload) for payload in payloads])
            node.children = children
            self._fire(node)
            return children
        finally:
            if self._in_flight.get(node) is asyncio.current_task():
                del self._in_flight[node]

    def invalidate(self, node: NodeT) -> None:
        """
        Drops the cached children of the given node, so that the next get_children fetches them again.
        Expansions of the node or its descendants that are still in flight are discarded on arrival.
        """
        for n in self._walk(node):
            self._epochs[n] = self._epochs.get(n, 0) + 1
            self._in_flight.pop(n, None)
        node.children = UNEXPANDED
        node.num_children = None
        node.failed = False
        self._fire(node)

    def close(self) -> None:
        """
        Removes the tree and hides the view; expansions still in flight are discarded on arrival.
        """
        self._generation += 1
        self._reveal_token += 1
        self.root = None
        self._epochs.clear()
        self._in_flight.clear()
        self._set_visible(False)
        self._fire(None)

    def dispose(self) -> None:
        self.close()
        self._listeners.clear()

    def tree_item(self, node: NodeT) -> TreeItem:
        if node is self.root:
            state = CollapsibleState.EXPANDED
        elif node.may_have_children():
            state = CollapsibleState.COLLAPSED
        else:
            state = CollapsibleState.NONE
        item = TreeItem(
            label=node.name,
            description=node.location.file_name,
            collapsible_state=state,
            command=CMD_HIERARCHY_GOTO,
            command_arguments=[node.location.uri, node.location.range.start.to_lsp()],
        )
        self._on_tree_item(item, node)
        return item
