from __future__ import annotations
import logging
from dataclasses import dataclass

from .errors import UnknownDevice

log = logging.getLogger(__name__)


@dataclass
class Device:
    number:   int
    watching: bool = True   # False suspends enforcement, not admission


class DeviceRegistry:
    """Fixed table of GPUs, built once at startup from the NVML device count."""

    def __init__(self, device_count: int):
        self._devices = [Device(number=n) for n in range(device_count)]

    def __len__(self) -> int:
        return len(self._devices)

    def list(self) -> list[Device]:
        return list(self._devices)

    def numbers(self) -> list[int]:
        return [d.number for d in self._devices]

    def set_watching(self, number: int, watching: bool) -> None:
        for device in self._devices:
            if device.number == number:
                device.watching = watching
                log.info(f"Set watching status of GPU {number} to {watching}")
                return
        raise UnknownDevice(number)
