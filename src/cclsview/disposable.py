import logging
from collections.abc import Callable, Iterable
from typing import Protocol

log = logging.getLogger(__name__)


class Disposable(Protocol):
    def dispose(self) -> None: ...


class CallbackDisposable:
    """
    Disposable that runs a callback once.
    """

    def __init__(self, callback: Callable[[], object]) -> None:
        self._callback: Callable[[], object] | None = callback

    def dispose(self) -> None:
        callback, self._callback = self._callback, None
        if callback is not None:
            callback()


def dispose_all(disposables: Iterable[Disposable]) -> None:
    """
    Disposes the given items in reverse order; failures are logged and do not stop the remaining disposals.
    """
    for disposable in reversed(list(disposables)):
        try:
            disposable.dispose()
        except Exception as e:
            log.error(f"Error while disposing {disposable}: {e}", exc_info=e)
