from __future__ import annotations

from erdma.drivers.base import Driver, modprobe_compat_mode
from erdma.model import Capability


class DefaultDriver(Driver):
    """Native erdma driver with RDMA CM and SMC-R."""

    name = "default"
    capabilities = Capability.VERBS | Capability.RDMA_CM | Capability.SMC_R

    def load(self) -> None:
        self.runner.container_exec(modprobe_compat_mode("N"))
        self.ensure_smcr()
