from __future__ import annotations

import platform

from erdma.drivers.base import Driver
from erdma.errors import DriverError
from erdma.model import ERI, ERdmaDeviceInfo


class UnsupportedDriver(Driver):
    name = "unsupported"

    def install(self) -> None:
        pass

    def probe_device(self, eri: ERI) -> ERdmaDeviceInfo:
        raise DriverError(f"unsupported eri on {platform.system()}")
