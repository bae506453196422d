"""
Lifecycle
=========

Starts admitted jobs in their owner's podman and reaps the ones whose
container has stopped.

Start:
  image missing or podman error  → JobCancelled, job dropped for good
  create/start fails             → JobCancelled, job dropped for good
  container running              → job active, JobStarted

Reap:
  container stopped              → job removed, JobFinished
  podman error                   → job removed anyway, JobFinished
                                   (a broken inspect must not pin GPUs forever)

podman is called one job at a time; a slow call holds up the whole tick.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from .errors import ContainerRuntimeError
from .jobs import Job, JobStore
from .pings import JobCancelled, JobFinished, JobStarted
from .pod import Pod

log = logging.getLogger(__name__)


class LifecycleManager:
    def __init__(self, notify: Callable, pod_factory: Callable[[int], Pod] = Pod):
        self.notify = notify            # notify(user, ping)
        self.pod_factory = pod_factory  # uid -> Pod

    # ─── Reap ─────────────────────────────────────────────────────────────────

    def reap_finished_jobs(self, store: JobStore) -> list[Job]:
        finished = []
        for job in store.snapshot_active():
            pod = self.pod_factory(job.owner.uid)
            try:
                done = pod.is_finished(job.container)
            except ContainerRuntimeError as e:
                log.error(f"Error determining container state for job {job.id}: {e}")
                done = True
            if done:
                log.info(f"Container finished for job {job.id}")
                finished.append(job)

        for job in finished:
            store.remove_active(job.id)
            self.notify(job.owner, JobFinished(id=job.id))
        return finished

    # ─── Start ────────────────────────────────────────────────────────────────

    def _cancel(self, job: Job, reason: str):
        log.warning(f"Cancelling job {job.id} for uid {job.owner.uid}: {reason}")
        self.notify(job.owner, JobCancelled(id=job.id, reason=reason))

    def try_start_job(self, store: JobStore) -> Optional[Job]:
        """Admit at most one queued job and start its container. Returns it if now active."""
        job = store.pop_next_admissible()
        if job is None:
            return None

        pod = self.pod_factory(job.owner.uid)
        try:
            exists = pod.image_exists(job.image_id)
        except ContainerRuntimeError as e:
            self._cancel(job, f"Error finding image {job.image_id}: {e}")
            return None
        if not exists:
            self._cancel(job, f"Cannot find image {job.image_id}")
            return None

        try:
            container = pod.create_and_start(job.image_id)
        except ContainerRuntimeError as e:
            self._cancel(job, f"Error starting container for image {job.image_id}: {e}")
            return None

        store.activate(job, container)
        log.info(f"Started job {job.id} on GPUs {sorted(job.gpus)} in container {container[:12]}")
        self.notify(job.owner, JobStarted(id=job.id))
        return job
