"""Node-local erdma kernel driver layer."""

from __future__ import annotations

from erdma.drivers.base import Driver, DriverRegistry
from erdma.drivers.compat import CompatDriver
from erdma.drivers.default import DefaultDriver
from erdma.drivers.ofed import OFEDDriver
from erdma.drivers.unsupported import UnsupportedDriver


def default_registry() -> DriverRegistry:
    registry = DriverRegistry()
    for driver_cls in (DefaultDriver, CompatDriver, OFEDDriver, UnsupportedDriver):
        registry.register(driver_cls)
    return registry


__all__ = ["Driver", "DriverRegistry", "default_registry"]
