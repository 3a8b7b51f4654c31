import logging

from cclsview.config import CclsViewConfig
from cclsview.constants import STATUS_PREFIX
from cclsview.host import HostWindow, StatusColor, StatusItem
from cclsview.rpc import CloseAction, ErrorAction, StringDict

log = logging.getLogger(__name__)


class CclsErrorHandler:
    """
    Crash policy of a session: transport errors are tolerated, a lost connection is shown in the status item
    and, depending on the configuration, announced to the user and answered with a restart.
    """

    def __init__(self, config: CclsViewConfig, status: StatusItem, window: HostWindow | None = None) -> None:
        self.config = config
        self.status = status
        self._window = window

    def error(self, error: Exception, message: StringDict | None, count: int) -> ErrorAction:
        return ErrorAction.CONTINUE

    def closed(self) -> CloseAction:
        notify_on_crash = self.config.get("launch.notifyOnCrash")
        restart = self.config.get("launch.autoRestart")

        self.status.text = f"{STATUS_PREFIX}: crashed"
        self.status.color = StatusColor.RED

        if notify_on_crash and self._window is not None:
            self._window.show_information_message(
                "ccls has crashed; it has been restarted." if restart else "ccls has crashed; it has not been restarted."
            )
        log.error(f"ccls has crashed (auto restart: {restart})")

        if restart:
            return CloseAction.RESTART
        return CloseAction.DO_NOT_RESTART
