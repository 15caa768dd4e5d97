"""
In-process registry of contract-test runs.

Each submitted run gets its own thread and event loop. Callers poll the run's
log by offset, ask for its status, or cancel it from any thread.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from src.export.run_log import LogEvent, RunLog, Severity
from src.guard.config import RunConfig
from src.guard.plan_runner import PlanRunner, PlanRunnerResult
from src.guard.types import EndpointGroup, FixtureCase

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def finished(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class RunRequest:
    config: RunConfig
    catalog: Optional[Sequence[EndpointGroup]] = None
    fixtures: Optional[Sequence[FixtureCase]] = None
    label: str = ""


@dataclass(frozen=True)
class RunHandle:
    run_id: str


@dataclass
class _Run:
    handle: RunHandle
    request: RunRequest
    run_log: RunLog
    status: RunStatus = RunStatus.PENDING
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    result: Optional[PlanRunnerResult] = None
    error: Optional[str] = None
    thread: Optional[threading.Thread] = None
    loop: Optional[asyncio.AbstractEventLoop] = None
    cancel_event: Optional[asyncio.Event] = None
    cancel_requested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.handle.run_id,
            "label": self.request.label,
            "mode": self.request.config.mode,
            "status": self.status.value,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "ok": self.result.ok if self.result else None,
            "summary": self.result.report.summary() if self.result else None,
            "error": self.error,
            "events": len(self.run_log),
        }


def _default_runner_factory(config: RunConfig, run_log: RunLog) -> PlanRunner:
    return PlanRunner(config, run_log=run_log)


class TaskRegistry:
    """
    Bounded store of runs. When more than ``max_history`` runs are held the
    oldest finished one is evicted; runs that are still going are never evicted.
    """

    def __init__(
        self,
        max_history: int = MAX_HISTORY,
        runner_factory: Callable[[RunConfig, RunLog], Any] = _default_runner_factory,
        echo: bool = True,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be >= 1")
        self.max_history = max_history
        self.runner_factory = runner_factory
        self.echo = echo
        self._runs: "OrderedDict[str, _Run]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def __contains__(self, handle: RunHandle) -> bool:
        with self._lock:
            return handle.run_id in self._runs

    def submit(self, request: RunRequest) -> RunHandle:
        handle = RunHandle(run_id=str(uuid.uuid4()))
        run = _Run(handle=handle, request=request, run_log=RunLog(echo=self.echo))
        run.thread = threading.Thread(target=self._thread_main, args=(run,), name=f"run-{handle.run_id[:8]}", daemon=True)
        with self._lock:
            self._runs[handle.run_id] = run
            self._evict()
        run.run_log.emit(Severity.INFO, f"Run queued{': ' + request.label if request.label else ''}")
        run.thread.start()
        return handle

    def _evict(self) -> None:
        while len(self._runs) > self.max_history:
            victim = next((rid for rid, r in self._runs.items() if r.status.finished), None)
            if victim is None:
                return
            del self._runs[victim]
            logger.debug("Evicted run %s from history", victim)

    def _get(self, handle: RunHandle) -> _Run:
        with self._lock:
            try:
                return self._runs[handle.run_id]
            except KeyError:
                raise KeyError(f"unknown run: {handle.run_id}") from None

    def _thread_main(self, run: _Run) -> None:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            cancel_event = asyncio.Event()
            with self._lock:
                run.loop = loop
                run.cancel_event = cancel_event
                run.status = RunStatus.RUNNING
                if run.cancel_requested:
                    cancel_event.set()

            runner = self.runner_factory(run.request.config, run.run_log)
            result = loop.run_until_complete(runner.arun(
                catalog=run.request.catalog,
                fixtures=run.request.fixtures,
                cancel_event=cancel_event,
            ))
            run.result = result
            if result.report.cancelled:
                status = RunStatus.CANCELLED
            else:
                status = RunStatus.COMPLETED if result.ok else RunStatus.FAILED
        except Exception as e:
            logger.exception("Run %s crashed", run.handle.run_id)
            run.error = f"{e.__class__.__name__}: {e}"
            run.run_log.emit(Severity.ERROR, f"Error: {e}")
            status = RunStatus.FAILED
        finally:
            with self._lock:
                run.loop = None
            loop.close()
            asyncio.set_event_loop(None)

        with self._lock:
            run.status = status
            run.finished_at = time.time()
            self._evict()

    def poll_new_events(self, handle: RunHandle, since_offset: int = 0) -> Tuple[List[LogEvent], int, RunStatus]:
        """Events emitted at or after ``since_offset``, the offset to poll from next, and the run status."""
        run = self._get(handle)
        events = run.run_log.since(since_offset)
        next_offset = events[-1].offset + 1 if events else max(since_offset, 0)
        return events, next_offset, run.status

    def subscribe(self, handle: RunHandle, callback: Callable[[LogEvent], None]) -> None:
        self._get(handle).run_log.subscribe(callback)

    def cancel(self, handle: RunHandle) -> bool:
        """Request cancellation; False when the run has already finished."""
        run = self._get(handle)
        with self._lock:
            if run.status.finished:
                return False
            run.cancel_requested = True
            loop, event = run.loop, run.cancel_event
            if loop is not None and event is not None:
                loop.call_soon_threadsafe(event.set)
        run.run_log.emit(Severity.WARN, "Cancellation requested")
        return True

    def status(self, handle: RunHandle) -> Dict[str, Any]:
        run = self._get(handle)
        with self._lock:
            return run.to_dict()

    def result(self, handle: RunHandle) -> Optional[PlanRunnerResult]:
        return self._get(handle).result

    def wait(self, handle: RunHandle, timeout: Optional[float] = None) -> RunStatus:
        run = self._get(handle)
        if run.thread is not None:
            run.thread.join(timeout)
        return run.status

    def list_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [run.to_dict() for run in reversed(self._runs.values())]
