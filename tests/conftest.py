"""Shared fakes for the podman, NVML and ping collaborators."""

from __future__ import annotations

import pytest

from clobberd.devices import DeviceRegistry
from clobberd.errors import ContainerRuntimeError, MonitorError
from clobberd.gpu import GpuProcess
from clobberd.jobs import JobStore
from clobberd.lifecycle import LifecycleManager
from clobberd.protocol import User


ALICE = User(uid=1000, name="alice")
BOB = User(uid=1001, name="bob")
ROOT = User(uid=0, name="root")


class FakeMonitor:
    def __init__(self, device_count: int = 4):
        self.count = device_count
        self.processes: dict[int, list[GpuProcess]] = {}
        self.failing: set[int] = set()
        self.unkillable: set[int] = set()
        self.killed: list[int] = []

    def add_process(self, device: int, pid: int, user: User):
        self.processes.setdefault(device, []).append(
            GpuProcess(pid=pid, uid=user.uid, username=user.name, device=device)
        )

    def device_count(self) -> int:
        return self.count

    def processes_on(self, device: int) -> list[GpuProcess]:
        if device in self.failing:
            raise MonitorError(f"GPU {device} fell off the bus")
        return list(self.processes.get(device, []))

    def kill(self, pid: int) -> bool:
        if pid in self.unkillable:
            return False
        self.killed.append(pid)
        for procs in self.processes.values():
            procs[:] = [p for p in procs if p.pid != pid]
        return True


class FakePod:
    """One shared podman for every uid; behaviour is driven per image / container."""

    def __init__(self):
        self.images: set[str] = set()
        self.image_errors: set[str] = set()
        self.start_errors: set[str] = set()
        self.running: set[str] = set()
        self.inspect_errors: set[str] = set()
        self.calls: list[tuple] = []
        self._next = 0

    def __call__(self, uid: int) -> "FakePod":
        self.calls.append(("pod", uid))
        return self

    def image_exists(self, image_id: str) -> bool:
        self.calls.append(("image_exists", image_id))
        if image_id in self.image_errors:
            raise ContainerRuntimeError("podman socket refused connection")
        return image_id in self.images

    def create_and_start(self, image_id: str) -> str:
        self.calls.append(("create_and_start", image_id))
        if image_id in self.start_errors:
            raise ContainerRuntimeError("Error starting container: no space left")
        self._next += 1
        container = f"c{self._next:04d}"
        self.running.add(container)
        return container

    def is_finished(self, container: str) -> bool:
        self.calls.append(("is_finished", container))
        if container in self.inspect_errors:
            raise ContainerRuntimeError(f"Error inspecting container {container}")
        return container not in self.running


class PingRecorder:
    def __init__(self):
        self.sent: list[tuple] = []

    def __call__(self, user, ping):
        self.sent.append((user, ping))


@pytest.fixture
def monitor():
    return FakeMonitor(device_count=4)


@pytest.fixture
def registry():
    return DeviceRegistry(4)


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def pod():
    return FakePod()


@pytest.fixture
def pings():
    return PingRecorder()


@pytest.fixture
def lifecycle(pod, pings):
    return LifecycleManager(notify=pings, pod_factory=pod)
