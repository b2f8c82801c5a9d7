"""Keyed store of per-slice working state.

Each (plan, slice) pair owns one SliceRecord. Switching slices goes through
SliceRegistry.reset(), which is the single place where working state is
evicted.
"""

from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from events.types import TimelineEntry
from models.schemas import Layer

logger = structlog.get_logger(__name__)


class SliceState(StrEnum):
    """Lifecycle of a slice: pending -> running -> completed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


SliceKey = tuple[str, int]


@dataclass
class SliceRecord:
    """Working state of one slice.

    Attributes:
        plan_id: Plan the slice belongs to.
        slice_number: The slice's item number.
        job_id: Job currently driving the slice, if any.
        layers: Last cached layer hierarchy for the job.
        logs: Log lines shown for the slice.
        timeline: Restored or persisted timeline entries.
        state: Lifecycle state.
        running: Run indicator shown while the slice (and any auto-advance
            chain) is executing.
    """

    plan_id: str
    slice_number: int
    job_id: str | None = None
    layers: list[Layer] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    timeline: list[TimelineEntry] = field(default_factory=list)
    state: SliceState = SliceState.PENDING
    running: bool = False

    @property
    def key(self) -> SliceKey:
        return (self.plan_id, self.slice_number)


class SliceRegistry:
    """Map from (plan_id, slice_number) to SliceRecord."""

    def __init__(self) -> None:
        self._records: dict[SliceKey, SliceRecord] = {}

    def get(self, plan_id: str, slice_number: int) -> SliceRecord:
        """Return the record for a slice, creating an empty one if needed."""
        key = (plan_id, slice_number)
        record = self._records.get(key)
        if record is None:
            record = SliceRecord(plan_id=plan_id, slice_number=slice_number)
            self._records[key] = record
        return record

    def reset(self, plan_id: str, slice_number: int, *, completed: bool) -> SliceRecord:
        """Evict a slice's working state ahead of activating it.

        A completed slice keeps its layers and timeline so they can be shown
        immediately; any other slice starts from an empty record that only
        remembers its job id.
        """
        previous = self._records.get((plan_id, slice_number))
        if completed and previous is not None:
            previous.state = SliceState.COMPLETED
            previous.running = False
            return previous

        record = SliceRecord(
            plan_id=plan_id,
            slice_number=slice_number,
            job_id=previous.job_id if previous else None,
            state=SliceState.COMPLETED if completed else SliceState.PENDING,
        )
        self._records[(plan_id, slice_number)] = record
        logger.debug(
            "slice_record_reset",
            plan_id=plan_id,
            slice_number=slice_number,
            completed=completed,
        )
        return record

    def __contains__(self, key: object) -> bool:
        return key in self._records
