"""
Job Store
=========

The single source of truth for who owns which GPU.

Queued jobs wait in arrival order. A job moves to the active list only through
`pop_next_admissible`, which is the one place that guarantees no GPU is ever
claimed by two active jobs at once.
"""

from __future__ import annotations
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from .protocol import JobDetail, JobSummary, User

log = logging.getLogger(__name__)

JOB_ID_SPACE = 1 << 16


class JobPhase(enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    FINISHED = "finished"     # removed from the store by the reap path


@dataclass(eq=False)
class Job:
    id:        int
    owner:     User
    image_id:  str
    gpus:      frozenset[int]
    container: Optional[str] = None   # podman container id, set once active
    phase:     JobPhase      = JobPhase.QUEUED

    def summary(self) -> JobSummary:
        return JobSummary(id=self.id, owner=self.owner, gpus=tuple(sorted(self.gpus)))

    def detail(self) -> JobDetail:
        return JobDetail(
            id       = self.id,
            owner    = self.owner,
            image_id = self.image_id,
            gpus     = tuple(sorted(self.gpus)),
        )


# ─── Admission Policy ─────────────────────────────────────────────────────────

def first_admissible(queue: Iterable[Job], occupied: set[int]) -> Optional[Job]:
    """
    First-fit by arrival: the earliest queued job none of whose GPUs are occupied.

    This is not head-of-line blocking. A job behind a blocked head can go first,
    so a job asking for many GPUs can wait indefinitely behind a stream of
    small ones.
    """
    for job in queue:
        if job.gpus.isdisjoint(occupied):
            return job
    return None


# ─── Store ────────────────────────────────────────────────────────────────────

class JobStore:
    def __init__(self):
        self._queue: deque[Job] = deque()
        self._active: list[Job] = []
        self._next_id = 0

    def _allocate_id(self) -> int:
        # Wrapping counter that skips ids still held by a live job
        in_use = {j.id for j in self._queue} | {j.id for j in self._active}
        if len(in_use) >= JOB_ID_SPACE:
            raise OverflowError("every job id is in use")
        while self._next_id in in_use:
            self._next_id = (self._next_id + 1) % JOB_ID_SPACE
        job_id = self._next_id
        self._next_id = (self._next_id + 1) % JOB_ID_SPACE
        return job_id

    def enqueue(self, owner: User, image_id: str, gpus: Iterable[int]) -> int:
        """Append a job to the tail of the queue. GPU numbers are not validated."""
        job = Job(
            id       = self._allocate_id(),
            owner    = owner,
            image_id = image_id,
            gpus     = frozenset(gpus),
        )
        self._queue.append(job)
        log.info(
            f"Queued job {job.id} from uid {owner.uid} ({owner.name}) "
            f"from image {image_id} on GPUs {sorted(job.gpus)}"
        )
        return job.id

    def occupied(self) -> set[int]:
        """Union of the GPUs claimed by active jobs."""
        gpus: set[int] = set()
        for job in self._active:
            gpus |= job.gpus
        return gpus

    def pop_next_admissible(self, occupied: Optional[set[int]] = None) -> Optional[Job]:
        if occupied is None:
            occupied = self.occupied()
        job = first_admissible(self._queue, occupied)
        if job is not None:
            self._queue.remove(job)
        return job

    def activate(self, job: Job, container: str) -> None:
        # Guard the disjointness invariant even if a caller skipped admission
        clash = job.gpus & self.occupied()
        if clash:
            raise ValueError(f"job {job.id} claims GPUs already in use: {sorted(clash)}")
        job.container = container
        job.phase = JobPhase.ACTIVE
        self._active.append(job)

    def remove_active(self, job_id: int) -> Optional[Job]:
        for index, job in enumerate(self._active):
            if job.id == job_id:
                job = self._active.pop(index)
                job.phase = JobPhase.FINISHED
                return job
        return None

    def owner_of(self, device: int) -> Optional[User]:
        for job in self._active:
            if device in job.gpus:
                return job.owner
        return None

    def snapshot_active(self) -> list[Job]:
        return list(self._active)

    def queued(self) -> list[Job]:
        return list(self._queue)

    def snapshot_queue_positions(self, uid: int) -> list[tuple[int, Job]]:
        """(1-based position in the whole queue, job) for each of uid's queued jobs."""
        return [
            (position, job)
            for position, job in enumerate(self._queue, start=1)
            if job.owner.uid == uid
        ]
