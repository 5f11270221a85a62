"""Background scan jobs.

`ScanJobQueue.submit()` starts a scan as its own asyncio task and returns a
`ScanHandle` at once, so callers can acknowledge the request and poll or
await the outcome later.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from chain_asset_indexer.scanner.runner import BlockScanner, ScanResult, ScanState

logger = logging.getLogger(__name__)

ScannerFactory = Callable[[], BlockScanner]

DEFAULT_MAX_FINISHED_JOBS = 100


class ScanHandle:
    """Observable handle for one submitted scan."""

    def __init__(self, job_id: str, from_height: int | None, scanner: BlockScanner) -> None:
        self.job_id = job_id
        self.from_height = from_height
        self.submitted_at = datetime.now(UTC)
        self._scanner = scanner
        self._task: asyncio.Task[None] | None = None
        self.result: ScanResult | None = None
        self.error: BaseException | None = None

    @property
    def state(self) -> ScanState:
        if self.result is not None:
            return self.result.state
        if self.error is not None:
            return ScanState.FAILED
        return self._scanner.state

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def stop(self) -> None:
        """Stop at the next block boundary."""
        self._scanner.stop()

    async def wait(self) -> ScanResult:
        """Wait for the scan to finish.

        Raises:
            ScanError: If the scan range could not be established.
        """
        if self._task is None:
            raise RuntimeError(f"Scan job {self.job_id} was never started")
        await asyncio.shield(self._task)
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result

    def _start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"scan-{self.job_id}")

    async def _run(self) -> None:
        try:
            self.result = await self._scanner.start_scan(self.from_height)
        except Exception as e:
            self.error = e
            logger.error("Scan job %s failed: %s", self.job_id, e)


class ScanJobQueue:
    """Submits scans and tracks their handles.

    Overlapping scans are not prevented: two jobs over the same range race,
    and the uniqueness constraints reject the second writer's rows.
    Only the newest ``max_finished`` finished handles are retained.
    """

    def __init__(
        self,
        scanner_factory: ScannerFactory,
        *,
        max_finished: int = DEFAULT_MAX_FINISHED_JOBS,
    ) -> None:
        if max_finished < 0:
            raise ValueError("max_finished must be >= 0")
        self._scanner_factory = scanner_factory
        self._max_finished = max_finished
        self._jobs: dict[str, ScanHandle] = {}

    def submit(self, from_height: int | None = None) -> ScanHandle:
        """Start a scan in the background and return its handle immediately."""
        running = self.active()
        if running:
            logger.warning(
                "Submitting scan while %d scan(s) still running; ranges may overlap",
                len(running),
            )
        self._prune_finished()
        handle = ScanHandle(uuid.uuid4().hex, from_height, self._scanner_factory())
        self._jobs[handle.job_id] = handle
        handle._start()
        logger.info("Scan job %s submitted (from_height=%s)", handle.job_id, from_height)
        return handle

    def _prune_finished(self) -> None:
        finished = [job_id for job_id, h in self._jobs.items() if h.done]
        excess = len(finished) - self._max_finished
        for job_id in finished[:max(excess, 0)]:
            del self._jobs[job_id]

    def get(self, job_id: str) -> ScanHandle | None:
        return self._jobs.get(job_id)

    def active(self) -> list[ScanHandle]:
        return [h for h in self._jobs.values() if not h.done]

    def stop_all(self) -> None:
        for handle in self.active():
            handle.stop()

    async def aclose(self) -> None:
        """Stop running scans and wait for them to reach a block boundary."""
        self.stop_all()
        for handle in self.active():
            with contextlib.suppress(Exception):
                await handle.wait()
