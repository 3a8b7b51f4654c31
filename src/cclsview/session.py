"""
A single connection to the ccls engine together with everything built on top of it.
"""

import itertools
import logging
import os
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from sensai.util.logging import LogTime
from sensai.util.string import ToStringMixin

from cclsview.config import CclsViewConfig
from cclsview.disposable import CallbackDisposable, Disposable, dispose_all
from cclsview.error_handler import CclsErrorHandler
from cclsview.exceptions import AlreadyRunningError, ChannelClosedError, IllegalSessionTransitionError
from cclsview.hierarchy import CallHierarchy, CallHierarchyItemProvider, InheritanceHierarchy
from cclsview.host import CommandRegistry, HostWindow
from cclsview.rpc import ChannelFactory, CloseAction, RpcChannel
from cclsview.status import StatusPoller

log = logging.getLogger(__name__)

T = TypeVar("T", bound=Disposable)
_session_ids = itertools.count(1)


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


CrashCallback = Callable[["Session", CloseAction], None]


class Session(ToStringMixin):
    """
    Owns one RPC channel to the engine and the components using it (hierarchies, status poller,
    command registrations). Components only borrow the channel and are released when the session stops.

    Lifecycle: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED.
    """

    def __init__(
        self,
        cwd: str,
        channel_factory: ChannelFactory,
        config: CclsViewConfig,
        window: HostWindow,
        command_registry: CommandRegistry,
        lazy: bool = False,
        on_crash: CrashCallback | None = None,
    ) -> None:
        """
        :param cwd: the working directory of the engine (the workspace root)
        :param channel_factory: creates the channel when the session starts
        :param config: the client configuration
        :param window: the host window receiving status, context and message updates
        :param command_registry: where the session's commands are registered
        :param lazy: whether the engine is to be started in lazy mode (no initial indexing of the whole project)
        :param on_crash: called with the crash handler's decision when the channel closes unexpectedly
        """
        self.session_id = next(_session_ids)
        self.cwd = cwd
        self.lazy = lazy
        self.config = config
        self.state = SessionState.STOPPED
        self._channel_factory = channel_factory
        self._window = window
        self._command_registry = command_registry
        self._on_crash = on_crash
        self._resources: list[Disposable] = []

        self.channel: RpcChannel | None = None
        self.error_handler: CclsErrorHandler | None = None
        self.status: StatusPoller | None = None
        self.call_hierarchy: CallHierarchy | None = None
        self.inheritance_hierarchy: InheritanceHierarchy | None = None
        self.call_items: CallHierarchyItemProvider | None = None

    def _tostring_includes(self) -> list[str]:
        return ["session_id", "cwd", "lazy", "state"]

    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING

    def register(self, resource: T) -> T:
        """
        Registers a resource to be disposed when the session stops.
        """
        self._resources.append(resource)
        return resource

    def initialization_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"cache": {"directory": self.config.cache_directory}}
        if self.lazy:
            # no initial indexing; files are indexed when opened
            options["index"] = {"initialBlacklist": ["."]}
        return options

    def _initialize_params(self) -> dict[str, Any]:
        root_uri = Path(self.cwd).as_uri()
        return {
            "processId": os.getpid(),
            "rootPath": self.cwd,
            "rootUri": root_uri,
            "capabilities": {},
            "initializationOptions": self.initialization_options(),
            "workspaceFolders": [{"uri": root_uri, "name": Path(self.cwd).name}],
        }

    async def start(self) -> None:
        """
        Creates and starts the channel, initializes the engine and builds the components.

        :raises AlreadyRunningError: if the session is not stopped
        """
        if self.state != SessionState.STOPPED:
            raise AlreadyRunningError(f"Session {self.session_id} is already {self.state.value}")
        self.state = SessionState.STARTING
        try:
            with LogTime(f"ccls session startup (cwd={self.cwd}, lazy={self.lazy})", logger=log):
                await self._start_components()
        except BaseException:
            log.error(f"Failed to start {self}; releasing its resources")
            await self._shutdown_channel()
            self._release_resources()
            self.state = SessionState.STOPPED
            raise
        self.state = SessionState.RUNNING

    async def _start_components(self) -> None:
        channel = self._channel_factory(self.cwd, self.lazy)
        self.channel = channel
        status_item = self.register(self._window.create_status_item())
        self.error_handler = CclsErrorHandler(self.config, status_item, self._window)
        channel.error_handler = self.error_handler
        self.register(channel.on_closed(self._on_channel_closed))

        await channel.start()
        log.info("Sending initialize request to ccls and awaiting response")
        await channel.request("initialize", self._initialize_params())
        channel.notify("initialized", {})

        self.status = StatusPoller(channel, status_item, self.config.status_update_interval)
        self.register(CallbackDisposable(self.status.stop))
        self.call_hierarchy = self.register(CallHierarchy(channel, self._window, qualified=self.config.call_hierarchy_qualified))
        self.inheritance_hierarchy = self.register(
            InheritanceHierarchy(channel, self._window, qualified=self.config.inheritance_hierarchy_qualified)
        )
        self.call_items = CallHierarchyItemProvider(channel, qualified=self.config.call_hierarchy_qualified)
        for hierarchy in (self.call_hierarchy, self.inheritance_hierarchy):
            for name, callback in hierarchy.commands().items():
                self.register(self._command_registry.register_command(name, callback))
        self.status.start()

    async def stop(self) -> None:
        """
        Stops the engine, then releases every resource registered against the session.
        Stopping a stopped session does nothing.

        :raises IllegalSessionTransitionError: if the session is starting or already stopping
        """
        if self.state == SessionState.STOPPED:
            return
        if self.state != SessionState.RUNNING:
            raise IllegalSessionTransitionError(f"Cannot stop session {self.session_id} while it is {self.state.value}")
        self.state = SessionState.STOPPING
        log.info(f"Stopping {self}")
        try:
            await self._shutdown_channel()
        finally:
            self._release_resources()
            self.state = SessionState.STOPPED

    async def _shutdown_channel(self) -> None:
        if self.channel is not None:
            await self.channel.stop()

    def _release_resources(self) -> None:
        resources, self._resources = self._resources, []
        dispose_all(resources)

    def _on_channel_closed(self, error: ChannelClosedError) -> None:
        if self.state != SessionState.RUNNING:
            log.debug(f"Ignoring channel closure of {self} while {self.state.value}")
            return
        log.error(f"Connection of {self} lost: {error}")
        if self.status is not None:
            self.status.stop()
        assert self.error_handler is not None
        action = self.error_handler.closed()
        if self._on_crash is not None:
            self._on_crash(self, action)
