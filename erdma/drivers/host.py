"""Host command execution and sysfs discovery of network and RDMA links."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from erdma.errors import DriverError
from erdma.model import ERI, ERdmaDeviceInfo

logger = logging.getLogger(__name__)

SMC_PNET = "smc_pnet"
RDMA_CM_PATH = "/dev/infiniband/rdma_cm"
EXPOSE_PATTERN = re.compile(r"^i-\w+\s+(\w+(?:/\w+)*)$")


class CommandRunner:
    """Runs commands in the agent container or in the host mount namespace."""

    def run(self, args: List[str]) -> str:
        try:
            proc = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except OSError as e:
            raise DriverError(f"exec {args[0]} failed: {e}") from e
        if proc.returncode != 0:
            raise DriverError(f"exec {' '.join(args)} exited {proc.returncode}, output: {proc.stdout.strip()}")
        return proc.stdout

    def host_exec(self, cmd: str) -> str:
        return self.run(["nsenter", "-t", "1", "-m", "--", "bash", "-c", cmd])

    def container_exec(self, cmd: str) -> str:
        return self.run(["bash", "-c", cmd])

    def succeeds(self, args: List[str]) -> bool:
        try:
            self.run(args)
        except DriverError:
            return False
        return True


@dataclass
class NetLink:
    name: str
    mac: str
    up: bool


@dataclass
class RdmaLink:
    name: str
    node_guid: str


class Sysfs:
    """Reads link state from ``/sys``; ``root`` relocates it for tests."""

    def __init__(self, root: str = "/") -> None:
        self.root = Path(root)

    def _path(self, *parts: str) -> Path:
        return self.root.joinpath(*(p.lstrip("/") for p in parts))

    def net_links(self) -> List[NetLink]:
        """Physical network links (those backed by a device)."""
        base = self._path("sys/class/net")
        if not base.is_dir():
            return []
        links = []
        for entry in sorted(base.iterdir()):
            if not (entry / "device").exists():
                continue
            mac = _read(entry / "address")
            if not mac:
                continue
            links.append(NetLink(name=entry.name, mac=mac.lower(), up=_read(entry / "operstate") == "up"))
        return links

    def rdma_links(self) -> List[RdmaLink]:
        base = self._path("sys/class/infiniband")
        if not base.is_dir():
            return []
        return [
            RdmaLink(name=entry.name, node_guid=_read(entry / "node_guid"))
            for entry in sorted(base.iterdir())
        ]

    def dev_paths(self, rdma_name: str) -> List[str]:
        """Device files of an RDMA link, plus the RDMA CM device when present."""
        base = self._path("sys/class/infiniband_verbs")
        if not base.is_dir():
            raise DriverError(f"read dir {base} failed")
        paths = []
        for entry in sorted(base.iterdir()):
            ibdev = entry / "ibdev"
            if ibdev.exists() and _read(ibdev) == rdma_name:
                paths.append(os.path.join("/dev/infiniband", entry.name))
        if not paths:
            raise DriverError(f"can not find dev path for {rdma_name}")
        if self._path(RDMA_CM_PATH).exists():
            paths.append(RDMA_CM_PATH)
        return paths

    def numa_node(self, rdma_name: str) -> int:
        path = self._path("sys/class/infiniband", rdma_name, "device/numa_node")
        try:
            numa = int(_read(path, strict=True))
        except (OSError, ValueError) as e:
            raise DriverError(f"failed to get numa node for {rdma_name}: {e}") from e
        return max(numa, 0)

    def rdma_cm_on_host(self) -> bool:
        return self._path("proc/1/root", RDMA_CM_PATH).exists()


def _read(path: Path, strict: bool = False) -> str:
    try:
        return path.read_text().strip()
    except OSError:
        if strict:
            raise
        return ""


def guid_to_mac(guid: str) -> str:
    """MAC address embedded in an ERdma node GUID.

    Accepts the netlink byte form (8 colon-separated bytes, least significant
    first) and the sysfs form (4 colon-separated 16-bit groups).
    """
    parts = guid.split(":")
    try:
        if len(parts) == 8:
            raw = bytes(int(p, 16) for p in reversed(parts))
        elif len(parts) == 4 and all(len(p) == 4 for p in parts):
            raw = bytes.fromhex("".join(parts))
        else:
            raise ValueError("unexpected group count")
    except ValueError as e:
        raise DriverError(f"invalid rdma guid: {guid}: {e}") from e
    mac = raw[0:3] + raw[5:8]
    return ":".join(f"{b:02x}" for b in mac)


def erdma_mac_for_link(link_mac: str) -> str:
    # erdma guid carries the link mac with the first byte xor 0x2
    octets = [int(x, 16) for x in link_mac.split(":")]
    octets[0] ^= 0x2
    return ":".join(f"{b:02x}" for b in octets)


def find_rdma_link(link: NetLink, rdma_links: List[RdmaLink]) -> RdmaLink:
    want = erdma_mac_for_link(link.mac)
    for rl in rdma_links:
        if guid_to_mac(rl.node_guid) == want:
            return rl
    raise DriverError(f"cannot found rdma link for {link.name}")


def pnet_id(mac: str) -> str:
    return mac.upper().replace(":", "")


def config_smc_pnet_for_device(runner: CommandRunner, info: ERdmaDeviceInfo) -> None:
    pnet = pnet_id(info.mac)
    if pnet in runner.run([SMC_PNET, "-s"]):
        return
    runner.run([SMC_PNET, "-a", pnet, "-D", info.name])


def config_for_net_device(runner: CommandRunner, pnet: str, net_device: str) -> None:
    if net_device in runner.run([SMC_PNET, "-s"]):
        return
    runner.run([SMC_PNET, "-a", pnet, "-I", net_device])


def config_for_netns_net_device(runner: CommandRunner, pnet: str, net_device: str, netns: str) -> None:
    """Bind ``net_device`` inside the pod network namespace to ``pnet``."""
    enter = ["nsenter", f"-n/proc/1/root/{netns}", "--"]
    if net_device in runner.run(enter + [SMC_PNET, "-s"]):
        return
    runner.run(enter + [SMC_PNET, "-a", pnet, "-I", net_device])


def check_expose(instance_id: str, exposed: List[str], rdma_device: str) -> bool:
    """Whether ``rdma_device`` is in the exposed list for this instance.

    Each entry reads ``<instance-id> <dev>[/<dev>...]``; an empty list exposes
    everything.

    Raises:
        DriverError: if an entry is malformed
    """
    if not exposed or exposed == [""]:
        return True
    for entry in exposed:
        if not EXPOSE_PATTERN.match(entry):
            raise DriverError(f'invalid format {entry}. Expected format: "<instance-id> <dev>/<dev>..."')
        owner, devices = entry.split(None, 1)
        if owner == instance_id and rdma_device in devices.strip().split("/"):
            return True
    return False


def discover_local_eris(sysfs: Sysfs, instance_id: str, exposed: List[str]) -> List[ERI]:
    """Build ERIs from the RDMA links present on this node."""
    rdma_links = sysfs.rdma_links()
    eris = []
    for link in sysfs.net_links():
        try:
            rdma = find_rdma_link(link, rdma_links)
        except DriverError:
            logger.info(f"Link {link.name} is not an rdma device, skip")
            continue
        if not check_expose(instance_id, exposed, rdma.name):
            continue
        logger.info(f"Exposing local ERI {rdma.name} on {link.name}")
        eris.append(ERI(
            id=rdma.name,
            is_primary=link.name == "eth0",
            mac=link.mac,
            instance_id=instance_id,
            card_index=-1,
            queue_pair=-1,
        ))
    return eris


def parse_exposed(value: Optional[str]) -> List[str]:
    """Split the comma separated exposed-ERI flag value."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]
