"""
The explicit owner of the current ccls session and of everything that outlives a single session
(the output log, the restart commands).
"""

import asyncio
import logging
from collections.abc import Callable, Sequence

from cclsview.config import CclsViewConfig
from cclsview.constants import CMD_RESTART, CMD_RESTART_LAZY
from cclsview.disposable import CallbackDisposable, Disposable, dispose_all
from cclsview.exceptions import AlreadyRunningError
from cclsview.host import CommandRegistry, HostWindow, OutputChannelLogHandler
from cclsview.rpc import ChannelFactory, CloseAction
from cclsview.session import Session, SessionState

log = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]


class GlobalContext:
    """
    Holds exactly one session at a time. A restart stops the current session completely before the next one
    is created, so two sessions never hold an open channel at the same time. Components of a session
    (hierarchies, status poller) must be re-acquired via `server` (or on_session_started) after a restart.
    """

    def __init__(
        self,
        workspace_folders: Sequence[str],
        channel_factory: ChannelFactory,
        window: HostWindow,
        command_registry: CommandRegistry,
        config: CclsViewConfig | None = None,
    ) -> None:
        """
        :param workspace_folders: the folders opened in the host; the engine runs in the first one
        :param channel_factory: creates the channel of each session
        :param window: the host window
        :param command_registry: where commands are registered
        :param config: the client configuration; if None, it is loaded from the user configuration file
        """
        if not workspace_folders:
            raise ValueError("No workspace opened")
        self.cwd = workspace_folders[0]
        self.config = config if config is not None else CclsViewConfig.load()
        self._channel_factory = channel_factory
        self._window = window
        self._command_registry = command_registry
        self._session_listeners: list[SessionListener] = []
        self._restart_tasks: set[asyncio.Task] = set()

        self._log_handler = OutputChannelLogHandler(window)
        package_logger = logging.getLogger("cclsview")
        if package_logger.level == logging.NOTSET:
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(self._log_handler)
        log.info(f"Server CWD is {self.cwd}")

        self._server = self._create_session(lazy=False)
        self._disposables: list[Disposable] = [
            command_registry.register_command(CMD_RESTART, self.restart_cmd),
            command_registry.register_command(CMD_RESTART_LAZY, lambda: self.restart_cmd(True)),
        ]

    @property
    def server(self) -> Session:
        """
        :return: the current session; a different object after every restart
        """
        return self._server

    def on_session_started(self, listener: SessionListener) -> Disposable:
        """
        Registers a listener that is called with each session once it has started.
        """
        self._session_listeners.append(listener)
        return CallbackDisposable(
            lambda: self._session_listeners.remove(listener) if listener in self._session_listeners else None
        )

    def _create_session(self, lazy: bool) -> Session:
        return Session(
            self.cwd,
            self._channel_factory,
            self.config,
            self._window,
            self._command_registry,
            lazy=lazy,
            on_crash=self._on_crash,
        )

    async def start_server(self) -> None:
        """
        :raises AlreadyRunningError: if the current session is not stopped
        """
        if self._server.state != SessionState.STOPPED:
            raise AlreadyRunningError("Server is already running")
        await self._server.start()
        for listener in list(self._session_listeners):
            listener(self._server)

    async def stop_server(self) -> None:
        await self._server.stop()

    async def restart_cmd(self, lazy: bool = False) -> None:
        """
        Stops the current session, awaiting completion, then creates and starts a new one.

        :param lazy: whether the new session starts the engine in lazy mode
        :raises IllegalSessionTransitionError: if the current session is in the middle of a start or stop
        """
        await self.stop_server()
        self._server = self._create_session(lazy)
        log.info(f"Restarting ccls, lazy mode {'on' if lazy else 'off'}")
        await self.start_server()

    def _on_crash(self, session: Session, action: CloseAction) -> None:
        if session is not self._server:
            log.debug(f"Ignoring crash of replaced {session}")
            return
        if action != CloseAction.RESTART:
            return
        task = asyncio.get_running_loop().create_task(self.restart_cmd(session.lazy))
        self._restart_tasks.add(task)
        task.add_done_callback(self._on_restart_done)

    def _on_restart_done(self, task: asyncio.Task) -> None:
        self._restart_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(f"Automatic restart after crash failed: {error}", exc_info=error)

    async def dispose(self) -> None:
        """
        Disposes the command registrations, then stops the server.
        """
        disposables, self._disposables = self._disposables, []
        dispose_all(disposables)
        for task in list(self._restart_tasks):
            task.cancel()
        try:
            await self.stop_server()
        finally:
            logging.getLogger("cclsview").removeHandler(self._log_handler)
