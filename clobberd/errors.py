"""Exceptions raised across the daemon. Socket I/O failures stay plain OSError."""


class ClobberError(Exception):
    pass


class ProtocolError(ClobberError):
    """A request or response that does not decode to a known variant."""


class ContainerRuntimeError(ClobberError):
    """podman failed to answer, create, start or inspect."""


class MonitorError(ClobberError):
    """NVML or the process table could not be queried."""


class ConfigError(ClobberError):
    pass


class UnknownDevice(ClobberError):
    def __init__(self, device_number: int):
        super().__init__(f"No device with device number {device_number}")
        self.device_number = device_number
