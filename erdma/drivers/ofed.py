from __future__ import annotations

from erdma.drivers.base import Driver, modprobe_compat_mode
from erdma.model import Capability


class OFEDDriver(Driver):
    """erdma on GPU hosts running the OFED stack."""

    name = "ofed"
    capabilities = Capability.VERBS | Capability.OOB

    def load(self) -> None:
        self.runner.host_exec(modprobe_compat_mode("Y"))
        self.runner.host_exec("modprobe erdma")
