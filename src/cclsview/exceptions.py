"""
Exceptions raised by the ccls session and hierarchy layers.
"""


class CclsViewError(Exception):
    """
    Base class of all errors raised by cclsview.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}" + (f"; Cause: {self.cause}" if self.cause else "")


class RpcError(CclsViewError):
    """
    Error response returned by the engine for a single request.
    """

    def __init__(self, message: str, code: int | None = None, cause: Exception | None = None) -> None:
        super().__init__(message, cause)
        self.code = code


class ChannelClosedError(CclsViewError):
    """
    Raised when a request is sent on a channel that is closed or no longer reachable.
    Closure itself is reported to the session's crash handler, not to the caller of a request.
    """


class ResolutionError(CclsViewError):
    """
    Raised when the engine cannot map a source position to a symbol.
    """


class ExpansionError(CclsViewError):
    """
    Raised when the children of a hierarchy node cannot be fetched, e.g. because the
    node id is no longer known to the engine after a restart.
    """

    def __init__(self, message: str, node_id: str, cause: Exception | None = None) -> None:
        super().__init__(message, cause)
        self.node_id = node_id


class InfoQueryError(CclsViewError):
    """
    Raised when an info query fails; absorbed by the status poller.
    """


class AlreadyRunningError(CclsViewError):
    """
    Raised when starting a session that is not stopped.
    """


class IllegalSessionTransitionError(CclsViewError):
    """
    Raised when a start/stop/restart is requested while another transition is in progress.
    """
