"""Node agent: loads the erdma driver and serves devices to the kubelet."""

from __future__ import annotations

import logging
import signal
import sys
import threading
import traceback
from typing import List, Optional

from erdma.deviceplugin.plugin import ERdmaDevicePlugin
from erdma.drivers import Driver
from erdma.drivers.base import DEFAULT_DRIVER
from erdma.drivers.host import CommandRunner, Sysfs, config_smc_pnet_for_device, discover_local_eris
from erdma.k8s import ERdmaDeviceStore
from erdma.metadata import MetadataClient
from erdma.model import ERI, Capability, ERdmaDeviceInfo

logger = logging.getLogger(__name__)


def dump_stacks(signum=None, frame=None) -> None:
    """Log the stack of every live thread."""
    names = {t.ident: t.name for t in threading.enumerate()}
    chunks = []
    for ident, stack in sys._current_frames().items():
        chunks.append(f"Thread {names.get(ident, '?')} ({ident}):\n{''.join(traceback.format_stack(stack))}")
    logger.info("dump stacks:\n" + "\n".join(chunks))


def install_stack_dump(sig: int = signal.SIGUSR1) -> None:
    signal.signal(sig, dump_stacks)


def install_readvertise(plugin: ERdmaDevicePlugin, sig: int = signal.SIGHUP) -> None:
    """Push the device list to the kubelet again when ``sig`` arrives."""
    signal.signal(sig, plugin.notify)


class Agent:
    """Runs once per node.

    Either reads the ERIs the controller published for this node, or, with
    local discovery, builds them from the RDMA links on the host.
    """

    def __init__(
        self,
        node_name: str,
        driver: Driver,
        store: Optional[ERdmaDeviceStore] = None,
        alloc_all: bool = False,
        pre_start: bool = False,
        local_discovery: bool = False,
        exposed: Optional[List[str]] = None,
        metadata: Optional[MetadataClient] = None,
        runner: Optional[CommandRunner] = None,
        sysfs: Optional[Sysfs] = None,
    ) -> None:
        self.node_name = node_name
        self.driver = driver
        self.store = store
        self.alloc_all = alloc_all
        self.pre_start = pre_start
        self.local_discovery = local_discovery
        self.exposed = exposed or []
        self.metadata = metadata
        self.runner = runner or CommandRunner()
        self.sysfs = sysfs or Sysfs()
        logger.info(f"Agent for node {node_name}, local ERI discovery: {local_discovery}")

    def eris(self) -> List[ERI]:
        if not self.local_discovery:
            device = (self.store or ERdmaDeviceStore()).wait_node_device(self.node_name)
            return [info.to_eri() for info in device.devices]

        if self.exposed:
            self.alloc_all = True
            logger.info("Exposed ERIs configured, allocating all devices")
        metadata = self.metadata or MetadataClient()
        return discover_local_eris(self.sysfs, metadata.instance_id(), self.exposed)

    def prepare_devices(self) -> List[ERdmaDeviceInfo]:
        """Install the driver, probe every ERI and set up SMC pnet."""
        eris = self.eris()
        logger.info(f"ERIs for node {self.node_name}: {[e.id for e in eris]}, driver {self.driver.name}")
        self.driver.install()

        devices = [self.driver.probe_device(eri) for eri in eris]
        for info in devices:
            if info.capabilities & Capability.SMC_R:
                config_smc_pnet_for_device(self.runner, info)
        logger.info(f"Probed erdma devices: {[d.name for d in devices]}")
        return devices

    def device_plugin(self, devices: List[ERdmaDeviceInfo]) -> ERdmaDevicePlugin:
        return ERdmaDevicePlugin(
            devices,
            alloc_all=self.alloc_all,
            pre_start=self.pre_start,
            alloc_rdma_cm=self.driver.name == DEFAULT_DRIVER,
            runner=self.runner,
            rdma_cm_on_host=self.sysfs.rdma_cm_on_host,
        )

    def run(self, until: Optional[threading.Event] = None) -> None:
        install_stack_dump()
        devices = self.prepare_devices()
        plugin = self.device_plugin(devices)
        install_readvertise(plugin)
        plugin.serve(until)
