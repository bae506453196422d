"""
GPU Monitor
===========

Enumerates NVIDIA GPUs and the compute processes resident on each one using
pynvml (nvidia-smi bindings), and resolves process owners through psutil.

The daemon only needs three things from the hardware:
  - how many GPUs there are
  - which processes (pid, uid, username) are on a given GPU
  - a way to terminate one of them
"""

from __future__ import annotations
import logging
from dataclasses import dataclass

import psutil  # type: ignore

from .errors import MonitorError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GpuProcess:
    pid:      int
    uid:      int
    username: str
    device:   int


class GpuMonitor:
    def __init__(self):
        import pynvml  # type: ignore
        self._nvml = pynvml
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise MonitorError(f"NVML init failed: {e}") from e

    def device_count(self) -> int:
        try:
            return self._nvml.nvmlDeviceGetCount()
        except self._nvml.NVMLError as e:
            raise MonitorError(f"Could not count GPUs: {e}") from e

    def processes_on(self, device: int) -> list[GpuProcess]:
        try:
            handle = self._nvml.nvmlDeviceGetHandleByIndex(device)
            nvml_processes = self._nvml.nvmlDeviceGetComputeRunningProcesses(handle)
        except self._nvml.NVMLError as e:
            raise MonitorError(f"Could not list processes on GPU {device}: {e}") from e

        processes = []
        for proc in nvml_processes:
            try:
                p = psutil.Process(proc.pid)
                uid = p.uids().real
                username = p.username()
            except psutil.NoSuchProcess:
                continue  # Exited between the NVML query and now
            except psutil.AccessDenied:
                # Owner unknown: report as system so it is never killed by mistake
                uid, username = 0, "Unknown"
            processes.append(GpuProcess(pid=proc.pid, uid=uid, username=username, device=device))
        return processes

    def kill(self, pid: int) -> bool:
        """Send SIGTERM. Returns False if the process could not be signalled."""
        try:
            psutil.Process(pid).terminate()
            return True
        except psutil.NoSuchProcess:
            log.debug(f"Process {pid} already gone")
            return False
        except psutil.Error as e:
            log.error(f"Failed to kill process {pid}: {e}")
            return False

    def shutdown(self):
        try:
            self._nvml.nvmlShutdown()
        except self._nvml.NVMLError as e:
            log.debug(f"NVML shutdown failed: {e}")
