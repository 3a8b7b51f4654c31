"""
Tests for the lazily expanded hierarchy tree (expansion, sharing of in-flight requests, invalidation, staleness).
"""

import asyncio
import gc
from typing import Any

import pytest

from cclsview.constants import CMD_HIERARCHY_GOTO, METHOD_CALL
from cclsview.exceptions import ExpansionError, ResolutionError, RpcError
from cclsview.hierarchy import UNEXPANDED, CallHierarchy, CollapsibleState, Position

URI = "file:///src/main.cc"
POS = Position(line=10, character=4)


async def settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


class CallServer:
    """
    Answers $ccls/call requests: reveals (no id) with `root`, expansions with `expansions[id]`.
    Values may be callables (called with the params) to produce awaitables or raise errors.
    """

    def __init__(self, root: Any, expansions: dict[str, Any] | None = None) -> None:
        self.root = root
        self.expansions = expansions or {}

    def __call__(self, params: dict[str, Any]) -> Any:
        value = self.expansions.get(params["id"]) if "id" in params else self.root
        if callable(value):
            return value(params)
        return value


def gated(gate: asyncio.Event, result: Any):
    async def respond(params: dict[str, Any]) -> Any:
        await gate.wait()
        return result

    return respond


class TestHierarchyReveal:
    def test_reveal_builds_root_and_prefetched_level(self, fake_channel_class, window, payloads):
        root_payload = payloads.node(
            1,
            "main",
            num_children=2,
            children=[payloads.node(2, "caller_a", line=3, num_children=1), payloads.node(3, "caller_b", line=7, num_children=0)],
        )

        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(root_payload)})
            await channel.start()
            hierarchy = CallHierarchy(channel, window)
            root = await hierarchy.reveal(URI, POS)

            assert root is hierarchy.root
            assert root.name == "main"
            assert [c.id for c in await hierarchy.get_children(root)] == ["2", "3"]
            caller_a, caller_b = root.children
            assert caller_a.children is UNEXPANDED
            assert caller_b.is_expanded() and caller_b.children == []
            assert await hierarchy.get_children(None) == [root]

            (params,) = channel.requests(METHOD_CALL)
            assert params == {
                "callType": 3,
                "callee": False,
                "hierarchy": True,
                "levels": 2,
                "qualified": True,
                "position": {"line": 10, "character": 4},
                "textDocument": {"uri": URI},
            }
            assert window.contexts[CallHierarchy.context_key] is True

        asyncio.run(run())

    def test_reveal_without_symbol_raises_resolution_error(self, fake_channel_class, window):
        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(None)})
            await channel.start()
            hierarchy = CallHierarchy(channel, window)
            with pytest.raises(ResolutionError):
                await hierarchy.reveal(URI, POS)
            assert hierarchy.root is None
            assert CallHierarchy.context_key not in window.contexts

        asyncio.run(run())

    def test_reveal_error_response_raises_resolution_error(self, fake_channel_class):
        def fail(params):
            raise RpcError("not indexed", code=-32603)

        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(fail)})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            with pytest.raises(ResolutionError) as exc_info:
                await hierarchy.reveal(URI, POS)
            assert isinstance(exc_info.value.cause, RpcError)
            assert exc_info.value.cause.code == -32603

        asyncio.run(run())

    def test_superseded_reveal_is_discarded(self, fake_channel_class, payloads):
        async def run():
            gate = asyncio.Event()
            server = CallServer(gated(gate, payloads.node(1, "first")))
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)

            first = asyncio.create_task(hierarchy.reveal(URI, POS))
            await settle()
            server.root = payloads.node(2, "second")
            second = await hierarchy.reveal(URI, Position(20, 0))
            gate.set()

            assert await first is None
            assert second is hierarchy.root
            assert hierarchy.root.name == "second"

        asyncio.run(run())

    def test_reveal_replaces_previous_tree(self, fake_channel_class, payloads):
        async def run():
            server = CallServer(payloads.node(1, "first", num_children=1), {"1": payloads.node(1, children=[payloads.node(5)])})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            first_root = await hierarchy.reveal(URI, POS)
            await hierarchy.get_children(first_root)

            server.root = payloads.node(1, "first", num_children=1)
            second_root = await hierarchy.reveal(URI, POS)
            assert second_root is not first_root
            assert second_root.children is UNEXPANDED

        asyncio.run(run())

    def test_failed_reveal_keeps_pending_expansions(self, fake_channel_class, payloads):
        async def run():
            gate = asyncio.Event()
            server = CallServer(
                payloads.node(1, num_children=1, children=[payloads.node(2, num_children=1)]),
                {"2": gated(gate, payloads.node(2, children=[payloads.node(3)]))},
            )
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)
            (child,) = root.children

            pending = asyncio.create_task(hierarchy.get_children(child))
            await settle()
            server.root = None
            with pytest.raises(ResolutionError):
                await hierarchy.reveal(URI, Position(20, 0))
            assert hierarchy.root is root
            gate.set()

            assert [c.id for c in await pending] == ["3"]
            assert child.is_expanded()

        asyncio.run(run())


class TestHierarchyExpansion:
    def setup_method(self):
        self.events: list = []

    def _listener(self, node):
        # the cache must already hold the children when the change event fires
        self.events.append((node, node.is_expanded() if node is not None else None))

    def test_expand_once(self, fake_channel_class, payloads):
        async def run():
            server = CallServer(
                payloads.node(1, "main", num_children=1),
                {"1": payloads.node(1, "main", children=[payloads.node(2, line=4), payloads.node(3, line=9)])},
            )
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            hierarchy.on_did_change(self._listener)
            root = await hierarchy.reveal(URI, POS)

            first = await hierarchy.get_children(root)
            second = await hierarchy.get_children(root)

            assert [c.id for c in first] == ["2", "3"]
            assert [c is d for c, d in zip(first, second, strict=True)] == [True, True]
            expansion_requests = [p for p in channel.requests(METHOD_CALL) if "id" in p]
            assert len(expansion_requests) == 1
            assert expansion_requests[0]["levels"] == 1
            assert expansion_requests[0]["id"] == "1"
            assert self.events == [(None, None), (root, True)]

        asyncio.run(run())

    def test_concurrent_expansions_share_one_request(self, fake_channel_class, payloads):
        async def run():
            gate = asyncio.Event()
            server = CallServer(payloads.node(1, num_children=1), {"1": gated(gate, payloads.node(1, children=[payloads.node(2)]))})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)

            waiters = [asyncio.create_task(hierarchy.get_children(root)) for _ in range(3)]
            await settle()
            gate.set()
            results = await asyncio.gather(*waiters)

            assert len([p for p in channel.requests(METHOD_CALL) if "id" in p]) == 1
            assert all(r[0] is results[0][0] for r in results)

        asyncio.run(run())

    def test_same_symbol_at_two_positions_expands_separately(self, fake_channel_class, payloads):
        async def run():
            # a recursive function appears as its own caller; each appearance is a separate tree position
            server = CallServer(
                payloads.node(1, "recurse", num_children=1),
                {"1": lambda params: payloads.node(1, "recurse", children=[payloads.node(1, "recurse", num_children=1)])},
            )
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)

            (child,) = await hierarchy.get_children(root)
            assert child is not root
            (grandchild,) = await hierarchy.get_children(child)
            assert grandchild is not child
            assert len([p for p in channel.requests(METHOD_CALL) if "id" in p]) == 2

        asyncio.run(run())

    def test_invalidate_forces_refetch(self, fake_channel_class, payloads):
        async def run():
            server = CallServer(payloads.node(1, num_children=1), {"1": payloads.node(1, children=[payloads.node(2)])})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)
            await hierarchy.get_children(root)
            hierarchy.on_did_change(self._listener)

            hierarchy.invalidate(root)
            assert root.children is UNEXPANDED
            assert self.events == [(root, False)]

            server.expansions["1"] = payloads.node(1, children=[payloads.node(7)])
            assert [c.id for c in await hierarchy.get_children(root)] == ["7"]
            assert len([p for p in channel.requests(METHOD_CALL) if "id" in p]) == 2

        asyncio.run(run())

    def test_invalidate_does_not_retain_discarded_descendants(self, fake_channel_class, payloads):
        async def run():
            level = payloads.node(1, children=[payloads.node(2, num_children=1)])
            server = CallServer(
                payloads.node(1, num_children=1, children=[payloads.node(2, num_children=1)]),
                {"1": level, "2": payloads.node(2, children=[payloads.node(3, num_children=1)])},
            )
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)

            for _ in range(3):
                (child,) = await hierarchy.get_children(root)
                assert [c.id for c in await hierarchy.get_children(child)] == ["3"]
                del child
                hierarchy.invalidate(root)
            gc.collect()
            assert list(hierarchy._epochs.keys()) == [root]

        asyncio.run(run())

    def test_expansion_arriving_after_invalidate_is_discarded(self, fake_channel_class, payloads):
        async def run():
            gate = asyncio.Event()
            server = CallServer(payloads.node(1, num_children=1), {"1": gated(gate, payloads.node(1, children=[payloads.node(2)]))})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)

            pending = asyncio.create_task(hierarchy.get_children(root))
            await settle()
            hierarchy.invalidate(root)
            gate.set()

            assert await pending == []
            assert root.children is UNEXPANDED

        asyncio.run(run())

    def test_expansion_arriving_after_close_is_discarded(self, fake_channel_class, window, payloads):
        async def run():
            gate = asyncio.Event()
            server = CallServer(payloads.node(1, num_children=1), {"1": gated(gate, payloads.node(1, children=[payloads.node(2)]))})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel, window)
            root = await hierarchy.reveal(URI, POS)

            pending = asyncio.create_task(hierarchy.get_children(root))
            await settle()
            hierarchy.close()
            gate.set()

            assert await pending == []
            assert root.children is UNEXPANDED
            assert hierarchy.root is None
            assert await hierarchy.get_children(None) == []
            assert window.contexts[CallHierarchy.context_key] is False

        asyncio.run(run())

    def test_failed_expansion_marks_node_until_invalidated(self, fake_channel_class, payloads):
        def unknown_id(params):
            raise RpcError("unknown id", code=-32602)

        async def run():
            server = CallServer(payloads.node(1, num_children=1), {"1": unknown_id})
            channel = fake_channel_class({METHOD_CALL: server})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)

            with pytest.raises(ExpansionError) as exc_info:
                await hierarchy.get_children(root)
            assert exc_info.value.node_id == "1"
            assert root.failed
            assert root.children is UNEXPANDED

            # not retried automatically
            assert await hierarchy.get_children(root) == []
            assert len([p for p in channel.requests(METHOD_CALL) if "id" in p]) == 1

            hierarchy.invalidate(root)
            assert not root.failed
            server.expansions["1"] = payloads.node(1, children=[payloads.node(2)])
            assert [c.id for c in await hierarchy.get_children(root)] == ["2"]

        asyncio.run(run())

    def test_null_expansion_result_fails_node(self, fake_channel_class, payloads):
        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(payloads.node(1, num_children=1), {"1": None})})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)
            with pytest.raises(ExpansionError):
                await hierarchy.get_children(root)
            assert root.failed

        asyncio.run(run())

    def test_dispose_drops_listeners(self, fake_channel_class, payloads):
        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(payloads.node(1))})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            hierarchy.on_did_change(self._listener)
            hierarchy.dispose()
            self.events.clear()
            await hierarchy.reveal(URI, POS)
            assert self.events == []

        asyncio.run(run())


class TestTreeItem:
    def test_collapsible_state_and_goto_command(self, fake_channel_class, payloads):
        root_payload = payloads.node(
            1,
            "main",
            num_children=2,
            children=[payloads.node(2, "a", line=3, num_children=4), payloads.node(3, "b", line=5, num_children=0)],
        )

        async def run():
            channel = fake_channel_class({METHOD_CALL: CallServer(root_payload)})
            await channel.start()
            hierarchy = CallHierarchy(channel)
            root = await hierarchy.reveal(URI, POS)
            a, b = root.children

            root_item = hierarchy.tree_item(root)
            assert root_item.label == "main"
            assert root_item.description == "main.cc"
            assert root_item.collapsible_state == CollapsibleState.EXPANDED
            assert hierarchy.tree_item(a).collapsible_state == CollapsibleState.COLLAPSED
            assert hierarchy.tree_item(b).collapsible_state == CollapsibleState.NONE

            item = hierarchy.tree_item(a)
            assert item.command == CMD_HIERARCHY_GOTO
            assert item.command_arguments == [URI, {"line": 3, "character": 0}]

        asyncio.run(run())
