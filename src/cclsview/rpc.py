"""
The logical request/response channel to the ccls engine.

The channel speaks JSON-RPC 2.0 payloads; how the payloads are framed and carried
(stdio, socket) is left to concrete subclasses, which implement the transport hooks.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from sensai.util.string import ToStringMixin

from cclsview.disposable import CallbackDisposable, Disposable
from cclsview.exceptions import ChannelClosedError, CclsViewError, RpcError

log = logging.getLogger(__name__)

StringDict = dict[str, Any]
PayloadLike = StringDict | list | str | int | float | bool | None
ClosedCallback = Callable[[ChannelClosedError], None]
NotificationCallback = Callable[[Any], None]


class ErrorAction(Enum):
    CONTINUE = 1
    SHUTDOWN = 2


class CloseAction(Enum):
    DO_NOT_RESTART = 1
    RESTART = 2


class ErrorHandler(Protocol):
    def error(self, error: Exception, message: StringDict | None, count: int) -> ErrorAction: ...

    def closed(self) -> CloseAction: ...


def make_request(method: str, request_id: int, params: PayloadLike = None) -> StringDict:
    payload: StringDict = {"jsonrpc": "2.0", "method": method, "id": request_id}
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(method: str, params: PayloadLike = None) -> StringDict:
    payload: StringDict = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        payload["params"] = params
    return payload


class RpcRequest(ToStringMixin):
    def __init__(self, request_id: int, method: str, future: "asyncio.Future[PayloadLike]") -> None:
        self._request_id = request_id
        self._method = method
        self._status = "pending"
        self.future = future

    def _tostring_includes(self) -> list[str]:
        return ["_request_id", "_status", "_method"]

    @property
    def method(self) -> str:
        return self._method

    def on_result(self, payload: PayloadLike) -> None:
        self._status = "completed"
        if not self.future.done():
            self.future.set_result(payload)

    def on_error(self, err: Exception) -> None:
        """
        :param err: the error that occurred while processing the request (an RpcError for errors
            returned by the engine or ChannelClosedError if the channel went away).
        """
        self._status = "error"
        if not self.future.done():
            self.future.set_exception(err)


class RpcChannel(ABC):
    """
    Asynchronous JSON-RPC client for the ccls engine.

    Requests are matched to responses by id, so responses may arrive in any order.
    When the transport drops, all pending requests fail with ChannelClosedError and the
    registered closed-callbacks are invoked, unless the closure was initiated by stop().

    Subclasses provide the transport through _open_transport, _close_transport and _transmit,
    and feed inbound payloads into _receive_payload. A dropped transport is reported
    through _connection_lost.
    """

    def __init__(self, request_timeout: float | None = None) -> None:
        self._request_timeout = request_timeout
        self._request_id = 1
        self._pending_requests: dict[int, RpcRequest] = {}
        self._notification_handlers: dict[str, NotificationCallback] = {}
        self._closed_callbacks: list[ClosedCallback] = []
        self._is_running = False
        self._is_shutting_down = False
        self._error_count = 0
        self.error_handler: ErrorHandler | None = None

    @abstractmethod
    async def _open_transport(self) -> None:
        pass

    @abstractmethod
    async def _close_transport(self) -> None:
        pass

    @abstractmethod
    def _transmit(self, payload: StringDict) -> None:
        """
        Hands a single outbound payload to the transport; must not block.
        """

    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            return
        await self._open_transport()
        self._is_running = True
        self._is_shutting_down = False
        self._error_count = 0
        log.info(f"RPC channel {self.__class__.__name__} started")

    async def request(self, method: str, params: PayloadLike = None) -> PayloadLike:
        """
        Sends a request and awaits the matching response.

        :raises ChannelClosedError: if the channel is not running or closes before the response arrives
        :raises RpcError: if the engine answers with an error response
        """
        if not self._is_running:
            raise ChannelClosedError(f"Cannot send request {method}: channel is not running")
        request_id = self._request_id
        self._request_id += 1
        request = RpcRequest(request_id, method, asyncio.get_running_loop().create_future())
        self._pending_requests[request_id] = request
        log.debug(f"Starting: {request}")
        try:
            self._transmit(make_request(method, request_id, params))
            if self._request_timeout is not None:
                try:
                    return await asyncio.wait_for(request.future, timeout=self._request_timeout)
                except TimeoutError as e:
                    raise RpcError(f"Request {method} timed out ({self._request_timeout}s)", cause=e) from e
            return await request.future
        finally:
            self._pending_requests.pop(request_id, None)
            log.debug(f"Completed: {request}")

    def notify(self, method: str, params: PayloadLike = None) -> None:
        if not self._is_running:
            raise ChannelClosedError(f"Cannot send notification {method}: channel is not running")
        self._transmit(make_notification(method, params))

    def on_notification(self, method: str, callback: NotificationCallback) -> Disposable:
        """
        Registers the handler for notifications of the given method sent by the engine.
        """
        self._notification_handlers[method] = callback
        return CallbackDisposable(lambda: self._notification_handlers.pop(method, None))

    def on_closed(self, callback: ClosedCallback) -> Disposable:
        """
        Registers a callback invoked when the channel closes without stop() having been called.
        """
        self._closed_callbacks.append(callback)
        return CallbackDisposable(lambda: self._closed_callbacks.remove(callback) if callback in self._closed_callbacks else None)

    async def stop(self) -> None:
        """
        Sends the shutdown request and the exit notification to the engine, then closes the transport.
        Stopping a channel that is not running does nothing.
        """
        if not self._is_running:
            return
        self._is_shutting_down = True
        try:
            log.info("Sending shutdown request to server")
            await self.request("shutdown")
            log.info("Sending exit notification to server")
            self.notify("exit")
        except CclsViewError as e:
            log.warning(f"Engine did not acknowledge shutdown: {e}")
        finally:
            self._is_running = False
            await self._close_transport()
            self._cancel_pending_requests(ChannelClosedError("Channel was stopped"))
        log.info(f"RPC channel {self.__class__.__name__} stopped")

    def _receive_payload(self, payload: StringDict) -> None:
        """
        Dispatches an inbound payload to the pending request (responses) or the notification handler.
        """
        if "method" in payload:
            if "id" in payload:
                # ccls does not issue client-bound requests that this layer needs to answer
                log.debug(f"Ignoring server request {payload['method']}")
                return
            self._notification_handler(payload)
        elif "id" in payload:
            self._response_handler(payload)
        else:
            log.warning(f"Unknown payload type: {payload}")

    def _response_handler(self, response: StringDict) -> None:
        response_id = response["id"]
        if isinstance(response_id, str) and response_id.isdigit():
            response_id = int(response_id)
        request = self._pending_requests.pop(response_id, None)
        if request is None:
            log.debug(f"Request interrupted or not found for ID {response_id}")
            return
        if "error" in response:
            error = response["error"] or {}
            request.on_error(RpcError(error.get("message", ""), code=error.get("code")))
        else:
            request.on_result(response.get("result"))

    def _notification_handler(self, notification: StringDict) -> None:
        method = notification["method"]
        handler = self._notification_handlers.get(method)
        if handler is None:
            log.debug(f"Unhandled notification {method}")
            return
        try:
            handler(notification.get("params"))
        except Exception as e:
            log.error(f"Error in handler for notification {method}: {e}", exc_info=e)

    def _cancel_pending_requests(self, exception: Exception) -> None:
        if self._pending_requests:
            log.info(f"Cancelling {len(self._pending_requests)} pending requests")
        for request in list(self._pending_requests.values()):
            request.on_error(exception)
        self._pending_requests.clear()

    def _report_error(self, error: Exception, message: StringDict | None = None) -> None:
        """
        Reports a transport-level error; the error handler decides whether the channel survives it.
        """
        self._error_count += 1
        action = ErrorAction.CONTINUE
        if self.error_handler is not None:
            action = self.error_handler.error(error, message, self._error_count)
        log.warning(f"Transport error #{self._error_count} ({action.name}): {error}")
        if action == ErrorAction.SHUTDOWN:
            self._connection_lost(error)

    def _connection_lost(self, cause: Exception | None = None) -> None:
        """
        Marks the channel as closed after the transport dropped.
        """
        was_running = self._is_running
        self._is_running = False
        closed_error = ChannelClosedError("Connection to the engine was lost", cause=cause)
        self._cancel_pending_requests(closed_error)
        if self._is_shutting_down or not was_running:
            return
        log.error(str(closed_error))
        for callback in list(self._closed_callbacks):
            callback(closed_error)


ChannelFactory = Callable[[str, bool], RpcChannel]
"""
Creates a new, not yet started channel for the given working directory and lazy flag.
"""
