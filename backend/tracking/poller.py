"""Fixed-cadence status polling for task-splitting jobs.

The StatusPoller performs one immediate fetch, then keeps fetching at a
fixed interval until its stop condition holds. Two pollers exist per job:
the main poller (stops once the job and its codegen are terminal) and the
pull-request poller (stops once a PR URL appears or PR creation fails),
which can run after the main poller has already finished.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from models.schemas import JobSnapshot
from tracking.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

SnapshotFetcher = Callable[[], Awaitable[JobSnapshot]]
TickHandler = Callable[[JobSnapshot, bool], Awaitable[None]]
StopCondition = Callable[[JobSnapshot], bool]


def main_polling_finished(snapshot: JobSnapshot) -> bool:
    return snapshot.polling_finished


def pr_polling_finished(snapshot: JobSnapshot) -> bool:
    return snapshot.pr_polling_finished


class StatusPoller:
    """Poll a job's status until a stop condition holds.

    Each tick fetches a fresh snapshot and compares it to the previous one
    on a fixed set of fields. When nothing relevant changed, the previous
    snapshot object is kept so consumers can skip work by identity.

    Fetch failures are logged and retried on the next tick. A tick always
    completes before the next one is scheduled.

    Attributes:
        name: Label used in logs ("status" or "pull_request").
        ticks: Number of ticks that produced a snapshot.
    """

    def __init__(
        self,
        job_id: str,
        fetch: SnapshotFetcher,
        on_tick: TickHandler,
        *,
        interval_seconds: float,
        is_finished: StopCondition = main_polling_finished,
        token: CancellationToken | None = None,
        name: str = "status",
        initial: JobSnapshot | None = None,
    ) -> None:
        self.job_id = job_id
        self.name = name
        self.ticks = 0
        self._fetch = fetch
        self._on_tick = on_tick
        self._interval = interval_seconds
        self._is_finished = is_finished
        self._token = token or CancellationToken()
        self._snapshot = initial
        self._finished = False
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> JobSnapshot | None:
        return self._snapshot

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Fetch once immediately, then start the interval loop.

        If the first snapshot already satisfies the stop condition, the
        interval loop is never started.
        """
        await self._tick()
        if self._finished or self._halted:
            logger.info(
                "poller_not_started",
                poller=self.name,
                job_id=self.job_id,
                finished=self._finished,
            )
            return
        self._task = asyncio.create_task(
            self._run(), name=f"{self.name}_poller_{self.job_id}"
        )

    @property
    def _halted(self) -> bool:
        return self._stopped or self._token.cancelled

    async def _run(self) -> None:
        logger.info("poller_started", poller=self.name, job_id=self.job_id)
        while not self._finished and not self._halted:
            if not await self._token.sleep(self._interval) or self._stopped:
                break
            await self._tick()
        logger.info(
            "poller_stopped",
            poller=self.name,
            job_id=self.job_id,
            ticks=self.ticks,
            finished=self._finished,
        )

    async def _tick(self) -> None:
        try:
            fresh = await self._fetch()
        except Exception as e:
            logger.warning(
                "poll_failed",
                poller=self.name,
                job_id=self.job_id,
                error=str(e),
            )
            return

        if self._halted:
            logger.debug("poll_result_discarded", poller=self.name, job_id=self.job_id)
            return

        changed = fresh.differs_from(self._snapshot)
        if changed:
            self._snapshot = fresh
        self.ticks += 1

        if self._is_finished(self._snapshot):
            self._finished = True

        logger.debug(
            "poll_tick",
            poller=self.name,
            job_id=self.job_id,
            changed=changed,
            status=self._snapshot.status,
            codegen_status=self._snapshot.codegen_status,
        )

        try:
            await self._on_tick(self._snapshot, changed)
        except Exception as e:
            logger.error(
                "poll_tick_handler_failed",
                poller=self.name,
                job_id=self.job_id,
                error=str(e),
            )

    def stop(self) -> None:
        """Stop the loop; an in-flight fetch result is discarded."""
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def join(self) -> None:
        """Wait for the interval loop to end."""
        if self._task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
