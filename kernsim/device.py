"""Registry of named devices that can be opened by instance number."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kernsim.errors import kassert, panic

DEFAULT_CAPACITY = 16

Opener = Callable[[Any], Any]


class DeviceNotFoundError(LookupError):
    """No device with the requested name and instance number."""


@dataclass(frozen=True)
class _Device:
    name: str
    opener: Opener
    aux: Any


class DeviceManager:
    """Fixed-size table of registered devices."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._devices: list[_Device] = []

    def register(self, name: str, opener: Opener, aux: Any = None) -> int:
        """Add a device and return its instance number among same-named ones."""
        kassert(name is not None, "device name is required")
        kassert(opener is not None, "device opener is required")
        if len(self._devices) >= self.capacity:
            panic("Too many devices (increase NDEV)")
        instno = sum(1 for dev in self._devices if dev.name == name)
        self._devices.append(_Device(name, opener, aux))
        return instno

    def open(self, name: str, instno: int = 0) -> Any:
        """Open the ``instno``-th device called ``name`` via its opener."""
        matches = [dev for dev in self._devices if dev.name == name]
        if not 0 <= instno < len(matches):
            raise DeviceNotFoundError(f"device {name}{instno} not found")
        device = matches[instno]
        return device.opener(device.aux)