from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from src.export.run_log import RunLog, Severity
from src.guard.errors import DependencySkipped
from src.guard.types import Outcome, PlanEntry, Report, TestResult

logger = logging.getLogger(__name__)


class ConcurrencyCoordinator:
    """
    Runs plan entries on at most ``max_parallel`` concurrent workers.

    An entry is dispatched only after every entry it depends on has PASSED;
    if one of them ends any other way the entry is SKIPPED without a network
    call. Setting ``cancel`` (or hitting ``run_timeout``) stops dispatching;
    in-flight entries finish their current step and end CANCELLED (an entry
    that has already deleted its resource re-creates it first), the rest are
    marked CANCELLED too.
    """

    def __init__(self, executor, max_parallel: int = 1, run_timeout: Optional[float] = None,
                 run_log: Optional[RunLog] = None) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
        self.executor = executor
        self.max_parallel = max_parallel
        self.run_timeout = run_timeout
        self.run_log = run_log or RunLog()

    async def run(self, entries: Sequence[PlanEntry], cancel: Optional[asyncio.Event] = None) -> Report:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.run_timeout if self.run_timeout else None
        stop = asyncio.Event()
        watcher = asyncio.ensure_future(_relay(cancel, stop)) if cancel is not None else None

        order = [e.entry_id for e in entries]
        known = set(order)
        pending: List[PlanEntry] = list(entries)
        results: Dict[str, TestResult] = {}
        running: Dict[asyncio.Future, PlanEntry] = {}
        total = len(entries)
        stopped_reason: Optional[str] = None

        try:
            while pending or running:
                if cancel is not None and cancel.is_set():
                    stop.set()
                if stop.is_set() and stopped_reason is None:
                    stopped_reason = "cancelled"
                if deadline is not None and loop.time() >= deadline and stopped_reason is None:
                    stopped_reason = "run timeout"
                    self.run_log.emit(Severity.ERROR, f"Run budget of {self.run_timeout}s exhausted")
                    stop.set()

                if stopped_reason is None:
                    self._settle_blocked(pending, results, known)
                    for entry in self._eligible(pending, results, len(running)):
                        pending.remove(entry)
                        self.run_log.emit(
                            Severity.INFO,
                            f"[{total - len(pending)}/{total}] Testing {entry.entry_id}",
                            entry.entry_id,
                        )
                        task = asyncio.ensure_future(self.executor.run(entry, stop))
                        running[task] = entry
                else:
                    for entry in pending:
                        results[entry.entry_id] = TestResult(
                            entry_id=entry.entry_id, outcome=Outcome.CANCELLED,
                            reason=stopped_reason, module=entry.module,
                        )
                    pending.clear()

                if not running:
                    continue

                timeout = None
                if deadline is not None and stopped_reason is None:
                    timeout = max(deadline - loop.time(), 0)
                waiters = set(running)
                if stopped_reason is None:
                    waiters.add(asyncio.ensure_future(stop.wait()))
                done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                for fut in waiters - set(running):
                    if not fut.done():
                        fut.cancel()

                for task in [t for t in done if t in running]:
                    entry = running.pop(task)
                    # AuthError and other fatal errors propagate from here
                    results[entry.entry_id] = task.result()
        except BaseException:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        return Report(
            results=[results[i] for i in order],
            cancelled=stopped_reason is not None,
            duration=loop.time() - started,
        )

    def _eligible(self, pending: List[PlanEntry], results: Dict[str, TestResult], busy: int) -> List[PlanEntry]:
        free = self.max_parallel - busy
        ready: List[PlanEntry] = []
        for entry in pending:
            if free <= 0:
                break
            if all(dep in results for dep in entry.depends_on):
                ready.append(entry)
                free -= 1
        return ready

    def _settle_blocked(self, pending: List[PlanEntry], results: Dict[str, TestResult], known: set) -> None:
        """Skip every pending entry with a finished dependency that did not pass (transitively)."""
        changed = True
        while changed:
            changed = False
            for entry in list(pending):
                bad = next(
                    (d for d in entry.depends_on if d not in known or (d in results and not results[d].passed)),
                    None,
                )
                if bad is None:
                    continue
                reason = DependencySkipped(entry.entry_id, bad)
                pending.remove(entry)
                results[entry.entry_id] = TestResult(
                    entry_id=entry.entry_id, outcome=Outcome.SKIPPED, reason=str(reason), module=entry.module,
                )
                self.run_log.emit(Severity.WARN, f"SKIPPED: {reason}", entry.entry_id)
                changed = True


async def _relay(source: asyncio.Event, target: asyncio.Event) -> None:
    await source.wait()
    target.set()
