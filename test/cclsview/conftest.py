"""
In-memory stand-ins for the ccls engine and the editor host, so that sessions, hierarchies and the status poller
can be exercised without a running language server.
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import pytest

from cclsview.disposable import CallbackDisposable, Disposable
from cclsview.exceptions import RpcError
from cclsview.host import StatusColor
from cclsview.rpc import RpcChannel, StringDict

Handler = Callable[[Any], Any]


class FakeChannel(RpcChannel):
    """
    Channel answering requests with registered handlers instead of a real engine.

    A handler receives the request params and returns the result; it may return an awaitable (to control
    the order in which responses arrive) or raise RpcError (to produce an error response).
    """

    def __init__(self, handlers: dict[str, Handler] | None = None, events: list[str] | None = None, name: str = "channel") -> None:
        super().__init__()
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.events = events if events is not None else []
        self.name = name
        self.sent: list[StringDict] = []

    async def _open_transport(self) -> None:
        self.events.append(f"{self.name}:open")

    async def _close_transport(self) -> None:
        self.events.append(f"{self.name}:close")

    def _transmit(self, payload: StringDict) -> None:
        self.sent.append(payload)
        if "id" in payload:
            self.events.append(f"{self.name}:request:{payload['method']}")
            asyncio.get_running_loop().create_task(self._respond(payload))
        else:
            self.events.append(f"{self.name}:notify:{payload['method']}")

    async def _respond(self, payload: StringDict) -> None:
        handler = self.handlers.get(payload["method"])
        try:
            result = handler(payload.get("params")) if handler is not None else None
            if inspect.isawaitable(result):
                result = await result
        except RpcError as e:
            self._receive_payload({"jsonrpc": "2.0", "id": payload["id"], "error": {"code": e.code, "message": e.message}})
            return
        self._receive_payload({"jsonrpc": "2.0", "id": payload["id"], "result": result})

    def requests(self, method: str) -> list[Any]:
        """
        :return: the params of all requests sent with the given method
        """
        return [p.get("params") for p in self.sent if "id" in p and p["method"] == method]

    def crash(self) -> None:
        self.events.append(f"{self.name}:crash")
        self._connection_lost(ConnectionResetError("engine process exited"))


class FakeStatusItem:
    def __init__(self) -> None:
        self.history: list[tuple[str, StatusColor]] = []
        self.text = ""
        self.tooltip = ""
        self.color = StatusColor.NONE
        self.shown = False
        self.disposed = False

    def __setattr__(self, key: str, value: Any) -> None:
        super().__setattr__(key, value)
        if key == "text":
            self.history.append((value, getattr(self, "color", StatusColor.NONE)))

    def show(self) -> None:
        self.shown = True

    def dispose(self) -> None:
        self.disposed = True


class FakeWindow:
    def __init__(self) -> None:
        self.status_items: list[FakeStatusItem] = []
        self.messages: list[str] = []
        self.contexts: dict[str, bool] = {}
        self.output: list[str] = []

    def create_status_item(self) -> FakeStatusItem:
        item = FakeStatusItem()
        self.status_items.append(item)
        return item

    def show_information_message(self, message: str) -> None:
        self.messages.append(message)

    def set_context(self, key: str, value: bool) -> None:
        self.contexts[key] = value

    def append_output_line(self, line: str) -> None:
        self.output.append(line)


class FakeCommandRegistry:
    """
    Command registry rejecting duplicate registrations, like an editor host does.
    """

    def __init__(self) -> None:
        self.commands: dict[str, Callable[..., Any]] = {}

    def register_command(self, name: str, callback: Callable[..., Any]) -> Disposable:
        if name in self.commands:
            raise ValueError(f"Command {name} is already registered")
        self.commands[name] = callback
        return CallbackDisposable(lambda: self.commands.pop(name, None))

    async def execute(self, name: str, *args: Any) -> Any:
        result = self.commands[name](*args)
        if inspect.isawaitable(result):
            result = await result
        return result


class RecordingChannelFactory:
    """
    Channel factory creating fake channels that share one event log, so that the order of operations
    across consecutive sessions can be checked.
    """

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.events: list[str] = []
        self.created: list[tuple[str, bool, FakeChannel]] = []

    def __call__(self, cwd: str, lazy: bool) -> FakeChannel:
        channel = FakeChannel(self.handlers, events=self.events, name=f"channel{len(self.created) + 1}")
        self.created.append((cwd, lazy, channel))
        return channel

    @property
    def channels(self) -> list[FakeChannel]:
        return [channel for _, _, channel in self.created]


def location(uri: str = "file:///src/main.cc", line: int = 0, character: int = 0) -> dict[str, Any]:
    return {
        "uri": uri,
        "range": {"start": {"line": line, "character": character}, "end": {"line": line, "character": character + 3}},
    }


def node_payload(node_id: Any, name: str | None = None, line: int = 0, num_children: int | None = None, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": node_id, "name": name or f"f{node_id}", "location": location(line=line)}
    if num_children is not None:
        payload["numChildren"] = num_children
    payload.update(extra)
    return payload


@pytest.fixture
def fake_channel_class() -> type[FakeChannel]:
    return FakeChannel


@pytest.fixture
def window() -> FakeWindow:
    return FakeWindow()


@pytest.fixture
def command_registry() -> FakeCommandRegistry:
    return FakeCommandRegistry()


@pytest.fixture
def channel_factory() -> RecordingChannelFactory:
    return RecordingChannelFactory()


@pytest.fixture
def payloads() -> Any:
    """
    Builders for engine payloads: payloads.node(id, ...) and payloads.location(...).
    """

    class _Payloads:
        node = staticmethod(node_payload)
        location = staticmethod(location)

    return _Payloads
