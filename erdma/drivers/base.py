"""Driver interface, registry and startup selection."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from erdma.drivers.host import CommandRunner, Sysfs, find_rdma_link
from erdma.drivers.netdev import NetDevConfigurator
from erdma.errors import DriverError
from erdma.model import ERI, Capability, ERdmaDeviceInfo

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "default"
DEFAULT_GPU_DRIVER = "ofed"

COMPAT_MODE_PARAM = "/sys/module/erdma/parameters/compat_mode"


def modprobe_compat_mode(mode: str) -> str:
    """Shell snippet (re)loading erdma with ``compat_mode`` set to ``mode``."""
    other = "N" if mode == "Y" else "Y"
    return (
        f'if [ -f {COMPAT_MODE_PARAM} ] && [ "{other}" == $(cat {COMPAT_MODE_PARAM}) ]; '
        f"then rmmod erdma && modprobe erdma compat_mode={mode}; "
        f"else modprobe erdma compat_mode={mode}; fi"
    )


class Driver:
    """Loads the kernel RDMA driver and probes ERIs into local devices.

    Subclasses set ``name`` and ``capabilities`` and implement ``load``.
    The kernel module itself must already be installed on the host.
    """

    name = ""
    capabilities = Capability(0)

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        sysfs: Optional[Sysfs] = None,
        netdev: Optional[NetDevConfigurator] = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.sysfs = sysfs or Sysfs()
        self.netdev = netdev

    def is_container_os(self) -> bool:
        try:
            return "lifsea" in self.runner.run(["uname", "-r"])
        except DriverError:
            return False

    def driver_exists(self) -> bool:
        if self.is_container_os():
            return self.runner.succeeds(["bash", "-c", "modinfo erdma"])
        return self.runner.succeeds(["nsenter", "-t", "1", "-m", "--", "bash", "-c", "stat /bin/eadm && modinfo erdma"])

    def install(self) -> None:
        if not self.driver_exists():
            raise DriverError(f"erdma kernel module is not installed on the host ({self.name} driver)")
        try:
            self.load()
        except DriverError as e:
            raise DriverError(f"install erdma driver failed: {e}") from e
        logger.info(f"Loaded erdma driver {self.name}")

    def load(self) -> None:
        raise NotImplementedError

    def ensure_smcr(self) -> None:
        self.runner.container_exec("modprobe smc")

    def probe_device(self, eri: ERI) -> ERdmaDeviceInfo:
        """Map an ERI to its kernel RDMA device by MAC address."""
        logger.info(f"Probing device for ERI {eri.id} ({eri.mac})")
        for link in self.sysfs.net_links():
            if link.mac != eri.mac.lower():
                continue
            if self.netdev is not None:
                self.netdev.ensure_net_device(link, eri)
            rdma = find_rdma_link(link, self.sysfs.rdma_links())
            return ERdmaDeviceInfo(
                name=rdma.name,
                mac=eri.mac,
                dev_paths=self.sysfs.dev_paths(rdma.name),
                numa=self.sysfs.numa_node(rdma.name),
                capabilities=self.capabilities,
            )
        raise DriverError(f"erdma device not found for {eri.mac}")


class DriverRegistry:
    """Driver classes keyed by name, built once at startup."""

    def __init__(self) -> None:
        self._drivers: Dict[str, type] = {}

    def register(self, driver_cls: type) -> None:
        self._drivers[driver_cls.name] = driver_cls

    def names(self):
        return sorted(self._drivers)

    def get(self, name: str) -> type:
        try:
            return self._drivers[name]
        except KeyError:
            raise DriverError(f"no erdma driver named {name!r} found") from None

    def select(self, prefer: str = "", runner: Optional[CommandRunner] = None, **kwargs) -> Driver:
        """Pick the preferred driver, else ofed on GPU hosts, else default."""
        runner = runner or CommandRunner()
        if prefer:
            name = prefer
        elif runner.succeeds(["nsenter", "-t", "1", "-m", "--", "bash", "-c", "which nvidia-smi"]):
            name = DEFAULT_GPU_DRIVER
        else:
            name = DEFAULT_DRIVER
        driver_cls = self.get(name)
        logger.info(f"Selected erdma driver {name}")
        return driver_cls(runner=runner, **kwargs)
