from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

import httpx

from src.export.run_log import RunLog, Severity
from src.guard.errors import ReadinessTimeoutError

logger = logging.getLogger(__name__)


class ReadinessPoller:
    """
    Polls a health URL until it answers 2xx, sleeping with capped exponential
    backoff (base, 2*base, ... up to max_delay) between attempts.

    If a VM starter is given it is fired, once per wait cycle, right after the
    first failed probe. It runs in the background; the poller keeps polling.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_delay: float = 2.0,
        max_delay: float = 15.0,
        probe_timeout: float = 5.0,
        vm_starter=None,
        run_log: Optional[RunLog] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.probe_timeout = probe_timeout
        self.vm_starter = vm_starter
        self.run_log = run_log or RunLog()
        self.sleep = sleep
        self.clock = clock
        self.start_task: Optional[asyncio.Task] = None

    async def probe(self, url: str) -> Tuple[bool, str]:
        try:
            response = await self.client.get(url, timeout=self.probe_timeout)
        except httpx.HTTPError as e:
            return False, f"connection failed: {e.__class__.__name__}"
        if response.is_success:
            return True, f"HTTP {response.status_code}"
        return False, f"HTTP {response.status_code}"

    async def wait_until_ready(self, api_url: str, max_wait_seconds: float) -> int:
        """Returns the number of probes issued; raises ReadinessTimeoutError when the budget runs out."""
        started = self.clock()
        delay = self.base_delay
        attempt = 0
        vm_start_fired = False
        self.run_log.emit(Severity.INFO, f"Waiting for API at {api_url} (max {max_wait_seconds}s)")

        while True:
            attempt += 1
            ok, detail = await self.probe(api_url)
            elapsed = self.clock() - started
            if ok:
                self.run_log.emit(Severity.SUCCESS, f"API ready after {attempt} attempt(s): {detail}")
                return attempt

            self.run_log.emit(Severity.WARN, f"Readiness probe {attempt} failed ({detail}), {elapsed:.0f}s elapsed")

            if self.vm_starter is not None and not vm_start_fired:
                vm_start_fired = True
                self._fire_vm_start()

            remaining = max_wait_seconds - elapsed
            if remaining <= 0:
                self.run_log.emit(Severity.ERROR, f"Timed out waiting for API at {api_url}")
                raise ReadinessTimeoutError(api_url, elapsed, attempt)

            await self.sleep(min(delay, remaining))
            delay = min(delay * 2, self.max_delay)

    def _fire_vm_start(self) -> None:
        self.run_log.emit(Severity.INFO, "API not reachable, requesting VM start")
        self.start_task = asyncio.ensure_future(self.vm_starter.start())
        self.start_task.add_done_callback(self._vm_start_done)

    def _vm_start_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.run_log.emit(Severity.WARN, f"VM start request failed: {error}")
        else:
            self.run_log.emit(Severity.INFO, "VM start request accepted")
