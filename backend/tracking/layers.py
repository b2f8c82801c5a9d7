"""Paginated layer retrieval with a change-aware cache.

The LayerFetcher walks the items endpoint page by page, following the
``next_layer_order`` cursor until it is null, and merges the result into
its cache. The cached list is only replaced when a shallow positional diff
finds a structural or status difference.

The diff assumes task status is monotonic and changes are append-only. If
the backend ever regresses a task status or removes a change without
altering counts, the cache will not pick the update up.
"""

from collections.abc import Sequence

import structlog

from config import settings
from models.schemas import CodegenStatus, JobSnapshot, Layer
from services.task_splitting import TaskSplittingClient
from tracking.cancellation import CancellationToken

logger = structlog.get_logger(__name__)


def layers_differ(cached: Sequence[Layer], fresh: Sequence[Layer]) -> bool:
    """Shallow positional comparison of two layer lists.

    Differences considered: list length, a layer's status or task count,
    and a task's status or change count at the same index.
    """
    if len(cached) != len(fresh):
        return True
    for old_layer, new_layer in zip(cached, fresh, strict=True):
        if old_layer.status != new_layer.status:
            return True
        if len(old_layer.tasks) != len(new_layer.tasks):
            return True
        for old_task, new_task in zip(old_layer.tasks, new_layer.tasks, strict=True):
            if old_task.status != new_task.status:
                return True
            if len(old_task.changes) != len(new_task.changes):
                return True
    return False


def merge_layers(cached: list[Layer], fresh: list[Layer]) -> list[Layer]:
    """Return ``fresh`` if it differs from ``cached``, else ``cached`` itself."""
    if layers_differ(cached, fresh):
        return fresh
    return cached


def should_fetch(
    cached: Sequence[Layer],
    snapshot: JobSnapshot,
    previous: JobSnapshot | None,
) -> bool:
    """Decide whether a poll tick warrants a full hierarchy fetch.

    Fetch when the cache is empty, codegen is in progress, the current step
    moved since the previous poll, or codegen just reached COMPLETED.
    """
    if not cached:
        return True
    if snapshot.codegen_status == CodegenStatus.IN_PROGRESS:
        return True
    if previous is None:
        return False
    if snapshot.current_step != previous.current_step:
        return True
    return (
        snapshot.codegen_status == CodegenStatus.COMPLETED
        and previous.codegen_status != CodegenStatus.COMPLETED
    )


class LayerFetcher:
    """Fetch and cache the layer hierarchy of one job.

    Single-flight:
        While a fetch is outstanding, further calls return the currently
        cached layers immediately instead of issuing another round trip.

    Failures:
        A failed fetch is logged and the last good cache is returned. Layer
        fetches are best-effort and never raise.

    Attributes:
        job_id: The job whose layers are fetched.
        layers: The cached layer list.
        revision: Incremented on every cache replacement.
        requests_made: Number of page requests issued.
        next_layer_order: Pagination cursor of the fetch in progress.
    """

    def __init__(
        self,
        client: TaskSplittingClient,
        job_id: str,
        *,
        page_size: int | None = None,
        token: CancellationToken | None = None,
        layers: list[Layer] | None = None,
    ) -> None:
        self.client = client
        self.job_id = job_id
        self.page_size = page_size or settings.layer_page_size
        self.layers: list[Layer] = layers if layers is not None else []
        self.revision = 0
        self.requests_made = 0
        self.next_layer_order: int | None = None
        self._token = token or CancellationToken()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def fetch_all(self) -> list[Layer]:
        """Retrieve every page and merge it into the cache.

        Returns:
            The (possibly unchanged) cached layer list.
        """
        if self._in_flight:
            logger.debug("layer_fetch_coalesced", job_id=self.job_id)
            return self.layers

        self._in_flight = True
        try:
            collected: list[Layer] = []
            start = 0
            pages = 0
            while True:
                self.next_layer_order = start
                page = await self.client.get_items(self.job_id, start, self.page_size)
                self.requests_made += 1
                pages += 1
                if self._token.cancelled:
                    logger.debug("layer_fetch_discarded", job_id=self.job_id)
                    return self.layers
                collected.extend(page.layers)
                if page.next_layer_order is None:
                    break
                start = page.next_layer_order
        except Exception as e:
            logger.warning("layer_fetch_failed", job_id=self.job_id, error=str(e))
            return self.layers
        finally:
            self._in_flight = False
            self.next_layer_order = None

        merged = merge_layers(self.layers, collected)
        if merged is not self.layers:
            self.layers = merged
            self.revision += 1
            logger.info(
                "layers_updated",
                job_id=self.job_id,
                layer_count=len(merged),
                pages=pages,
                revision=self.revision,
            )
        else:
            logger.debug("layers_unchanged", job_id=self.job_id, pages=pages)
        return self.layers

    async def refresh(
        self,
        snapshot: JobSnapshot,
        previous: JobSnapshot | None,
    ) -> list[Layer]:
        """Fetch when the gating policy allows it, else return the cache."""
        if should_fetch(self.layers, snapshot, previous):
            return await self.fetch_all()
        return self.layers
