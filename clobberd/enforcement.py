"""
Enforcement
===========

Once a job owns a GPU, only the owner and root may have processes on it.
Anything else found there is terminated on sight.

GPUs nobody has claimed are left alone, as are GPUs an admin has unwatched.
"""

from __future__ import annotations
import logging

from .devices import DeviceRegistry
from .errors import MonitorError
from .gpu import GpuProcess
from .jobs import JobStore

log = logging.getLogger(__name__)

SYSTEM_UID = 0


def kill_rogue_gpu_processes(registry: DeviceRegistry, store: JobStore, monitor) -> list[GpuProcess]:
    """One enforcement pass over every watched, owned GPU. Returns the processes killed."""
    killed = []
    for device in registry.list():
        if not device.watching:
            continue
        owner = store.owner_of(device.number)
        if owner is None:
            continue

        try:
            processes = monitor.processes_on(device.number)
        except MonitorError as e:
            log.error(f"Skipping enforcement on GPU {device.number}: {e}")
            continue

        for p in processes:
            if p.uid in (SYSTEM_UID, owner.uid):
                continue
            if monitor.kill(p.pid):
                killed.append(p)
                log.warning(
                    f"Killed process on GPU {device.number}: pid: {p.pid}, "
                    f"uid: {p.uid} ({p.username}), owner: {owner.uid} ({owner.name})"
                )
            else:
                log.error(f"Could not kill pid {p.pid} (uid {p.uid}) on GPU {device.number}")
    return killed
