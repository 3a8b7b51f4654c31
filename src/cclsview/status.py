"""
Periodic status polling of the ccls engine.

On every tick the poller sends a $ccls/info request and turns the response into the status item's text,
tooltip and color. A failing engine yields a single error update; further failures leave the status
untouched until a query succeeds again.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Self

from cclsview.constants import METHOD_INFO, STATUS_PREFIX
from cclsview.exceptions import CclsViewError, InfoQueryError
from cclsview.host import StatusColor, StatusItem
from cclsview.rpc import RpcChannel

log = logging.getLogger(__name__)


class StatusState(str, Enum):
    LOADING = "loading"
    HEALTHY = "healthy"
    ERRORED = "errored"


@dataclass(frozen=True)
class EnqueuedCompletedCounters:
    """Pipeline counters of engines reporting enqueued and completed index requests."""

    enqueued: int
    completed: int
    last_idle: int = 0

    @property
    def pending(self) -> int:
        return self.enqueued - self.completed

    def describe(self) -> str:
        return f"completed {self.completed}/{self.enqueued} index requests\nlast idle: {self.last_idle}"


@dataclass(frozen=True)
class PendingRequestsCounter:
    """Pipeline counters of engines reporting a single pending-requests count."""

    pending_requests: int

    @property
    def pending(self) -> int:
        return self.pending_requests

    def describe(self) -> str:
        return f"{self.pending_requests} pending index requests"


PipelineCounters = EnqueuedCompletedCounters | PendingRequestsCounter


def decode_pipeline(data: dict[str, Any]) -> PipelineCounters:
    """
    Decodes the pipeline section of an info response; the shape is decided by the fields present.

    :raises InfoQueryError: if neither known shape matches
    """
    if "pendingRequests" in data:
        return PendingRequestsCounter(pending_requests=int(data["pendingRequests"]))
    if "enqueued" in data or "completed" in data:
        return EnqueuedCompletedCounters(
            enqueued=int(data.get("enqueued") or 0),
            completed=int(data.get("completed") or 0),
            last_idle=int(data.get("lastIdle") or 0),
        )
    raise InfoQueryError(f"Unrecognized pipeline counters: {sorted(data)}")


@dataclass(frozen=True)
class StatusSnapshot:
    files: int
    funcs: int
    types: int
    vars: int
    entries: int
    pipeline: PipelineCounters

    @classmethod
    def from_info(cls, payload: Any) -> Self:
        """
        :raises InfoQueryError: if the response is malformed
        """
        try:
            db = payload["db"]
            return cls(
                files=int(db.get("files", 0)),
                funcs=int(db.get("funcs", 0)),
                types=int(db.get("types", 0)),
                vars=int(db.get("vars", 0)),
                entries=int(payload.get("project", {}).get("entries", 0)),
                pipeline=decode_pipeline(payload.get("pipeline") or {}),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InfoQueryError(f"Malformed info response: {e}", cause=e) from e

    @property
    def pending(self) -> int:
        return self.pipeline.pending

    def is_idle(self) -> bool:
        return self.pending <= 0

    def tooltip(self) -> str:
        return (
            f"{self.files} files,\n"
            f"{self.funcs} functions,\n"
            f"{self.types} types,\n"
            f"{self.vars} variables,\n"
            f"{self.entries} entries in project.\n\n"
            f"{self.pipeline.describe()}"
        )


class StatusPoller:
    """
    Polls the engine status at a fixed interval and reflects it in a status item.

    Ticks do not wait for the previous query to complete. Each query gets an issue sequence number and
    a response is applied only if no later-issued query has been applied already.
    """

    def __init__(self, channel: RpcChannel, status_item: StatusItem, update_interval: float) -> None:
        """
        :param channel: the channel to query (borrowed from the session)
        :param status_item: the status item to write into (owned by the caller)
        :param update_interval: the polling interval in seconds
        """
        self._channel = channel
        self.icon = status_item
        self.update_interval = update_interval
        self.state = StatusState.LOADING
        self.snapshot: StatusSnapshot | None = None
        self._was_error = False
        self._issued_seq = 0
        self._applied_seq = 0
        self._timer: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()

        self.icon.text = f"{STATUS_PREFIX}: loading"
        self.icon.tooltip = f"{STATUS_PREFIX} is starting / loading project metadata"
        self.icon.color = StatusColor.NONE
        self.icon.show()

    def start(self) -> None:
        if self._timer is not None:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run())
        log.debug(f"Status polling started (interval {self.update_interval}s)")

    def stop(self) -> None:
        """
        Stops polling; queries still in flight are cancelled. The status item keeps its last state.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for tick in list(self._ticks):
            tick.cancel()
        self._ticks.clear()

    def in_error(self) -> bool:
        return self._was_error

    @property
    def busy_jobs(self) -> int:
        if self.state != StatusState.HEALTHY or self.snapshot is None:
            return 0
        return max(self.snapshot.pending, 0)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.update_interval)
            tick = asyncio.get_running_loop().create_task(self.update_status())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)

    async def update_status(self) -> None:
        """
        Performs a single poll: queries the engine and applies the outcome unless a later query was applied first.
        """
        self._issued_seq += 1
        seq = self._issued_seq
        try:
            payload = await self._channel.request(METHOD_INFO)
            snapshot = StatusSnapshot.from_info(payload)
        except CclsViewError as e:
            if self._is_stale(seq):
                return
            self._applied_seq = seq
            self._on_failure(e)
            return
        if self._is_stale(seq):
            return
        self._applied_seq = seq
        self._on_success(snapshot)

    def _is_stale(self, seq: int) -> bool:
        if seq <= self._applied_seq:
            log.debug(f"Discarding stale info response #{seq} (already applied #{self._applied_seq})")
            return True
        return False

    def _on_failure(self, error: CclsViewError) -> None:
        if self._was_error:
            return
        self._was_error = True
        self.state = StatusState.ERRORED
        log.warning(f"Info request failed: {error}")
        self.icon.text = f"{STATUS_PREFIX}: error"
        self.icon.color = StatusColor.RED
        self.icon.tooltip = f"Failed to perform info request: {error.message}"

    def _on_success(self, snapshot: StatusSnapshot) -> None:
        self._was_error = False
        self.state = StatusState.HEALTHY
        self.snapshot = snapshot
        if snapshot.is_idle():
            self.icon.color = StatusColor.NONE
            self.icon.text = f"{STATUS_PREFIX}: idle"
        else:
            self.icon.color = StatusColor.YELLOW
            self.icon.text = f"{STATUS_PREFIX}: {snapshot.pending} jobs"
        self.icon.tooltip = snapshot.tooltip()
