"""
Interfaces of the editor host that cclsview writes into (status items, messages, context keys,
commands, the output log). The host implements them; cclsview never draws anything itself.
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

from cclsview.disposable import Disposable

CommandCallback = Callable[..., Awaitable[Any] | Any]


class StatusColor(str, Enum):
    NONE = ""
    YELLOW = "yellow"
    RED = "red"


class StatusItem(Protocol):
    text: str
    tooltip: str
    color: StatusColor

    def show(self) -> None: ...

    def dispose(self) -> None: ...


class HostWindow(Protocol):
    def create_status_item(self) -> StatusItem: ...

    def show_information_message(self, message: str) -> None: ...

    def set_context(self, key: str, value: bool) -> None: ...

    def append_output_line(self, line: str) -> None: ...


class CommandRegistry(Protocol):
    def register_command(self, name: str, callback: CommandCallback) -> Disposable: ...


class OutputChannelLogHandler(logging.Handler):
    """
    Forwards log records to the host's output log.
    """

    def __init__(self, window: HostWindow, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._window = window
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._window.append_output_line(self.format(record))
        except Exception:
            self.handleError(record)
