from __future__ import annotations

from erdma.drivers.base import Driver, modprobe_compat_mode
from erdma.model import Capability


class CompatDriver(Driver):
    """erdma in compat mode: out-of-band connection setup instead of RDMA CM."""

    name = "compat"
    capabilities = Capability.VERBS | Capability.OOB | Capability.SMC_R

    def load(self) -> None:
        self.runner.host_exec(modprobe_compat_mode("Y"))
        self.ensure_smcr()
