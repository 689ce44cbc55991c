"""Configures secondary ERI net devices from instance metadata via iproute2."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from erdma.drivers.host import CommandRunner, NetLink
from erdma.errors import DriverError
from erdma.metadata import MetadataClient
from erdma.model import ERI

logger = logging.getLogger(__name__)

DEFAULT_METRIC = 200
METRIC_ADDITION = 1


@dataclass
class Route:
    destination: Optional[str]  # None is the default route
    gateway: Optional[str]
    metric: int = 0


@dataclass
class NetConf:
    address: ipaddress.IPv4Interface
    routes: List[Route]


def _same_destination(dst: Optional[str], existing: str) -> bool:
    if dst is None:
        return existing in ("default", "0.0.0.0/0")
    return existing == dst


class NetDevConfigurator:
    """Brings an ERI link up with its metadata address and routes.

    Links that are already up are only checked, never reconfigured, so a
    restarted agent does not disturb live traffic.
    """

    def __init__(self, runner: CommandRunner, metadata: MetadataClient) -> None:
        self.runner = runner
        self.metadata = metadata

    def _ip_json(self, *args: str) -> list:
        out = self.runner.run(["ip", "-4", "-j", *args])
        return json.loads(out) if out.strip() else []

    def addresses(self, link: str) -> List[str]:
        result = []
        for entry in self._ip_json("addr", "show", "dev", link):
            for info in entry.get("addr_info", []):
                if info.get("local"):
                    result.append(info["local"])
        return result

    def routes(self, link: Optional[str] = None) -> List[dict]:
        args = ["route", "show"]
        if link:
            args += ["dev", link]
        return self._ip_json(*args)

    def net_conf(self, mac: str) -> NetConf:
        ip = self.metadata.primary_ip(mac)
        cidr = self.metadata.vswitch_cidr(mac)
        gateway = self.metadata.gateway(mac)
        try:
            network = ipaddress.IPv4Network(cidr, strict=False)
            address = ipaddress.IPv4Interface(f"{ipaddress.IPv4Address(ip)}/{network.prefixlen}")
            ipaddress.IPv4Address(gateway)
        except ValueError as e:
            raise DriverError(f"invalid metadata network config for {mac}: {e}") from e

        existing = self.routes()

        def metric_for(dst: Optional[str]) -> int:
            highest = max(
                (int(r.get("metric", 0)) for r in existing if _same_destination(dst, r.get("dst", ""))),
                default=0,
            )
            return max(highest + METRIC_ADDITION, DEFAULT_METRIC)

        routes = [
            Route(destination=str(network), gateway=None, metric=metric_for(str(network))),
            Route(destination=None, gateway=gateway, metric=metric_for(None)),
        ]
        return NetConf(address=address, routes=routes)

    def ensure_net_device(self, link: NetLink, eri: ERI) -> None:
        if eri.is_primary:
            return
        conf = self.net_conf(eri.mac)
        if link.up:
            if str(conf.address.ip) not in self.addresses(link.name):
                logger.error(f"IP {conf.address} not found on link {link.name} ({eri.mac})")
            return

        logger.info(f"Link {link.name} down, configuring it")
        self.runner.run(["ip", "link", "set", "dev", link.name, "up"])
        try:
            self.ensure_address(link.name, conf.address)
            self.ensure_routes(link.name, conf.routes)
        except DriverError:
            # leave the link down so the next start reconfigures it
            self.runner.run(["ip", "link", "set", "dev", link.name, "down"])
            raise

    def ensure_address(self, link: str, address: ipaddress.IPv4Interface) -> None:
        if str(address.ip) in self.addresses(link):
            return
        self.runner.run(["ip", "addr", "add", str(address), "dev", link, "noprefixroute"])

    def ensure_routes(self, link: str, routes: List[Route]) -> None:
        existing = self.routes(link)
        for route in routes:
            dst = route.destination or "default"
            matching = [r for r in existing if _same_destination(route.destination, r.get("dst", ""))]
            if any(int(r.get("metric", 0)) == route.metric for r in matching):
                continue
            for stale in matching:
                self.runner.run(["ip", "route", "del", dst, "dev", link, "metric", str(stale.get("metric", 0))])
            cmd = ["ip", "route", "add", dst]
            if route.gateway:
                cmd += ["via", route.gateway]
            cmd += ["dev", link, "metric", str(route.metric)]
            if not route.gateway:
                cmd += ["scope", "link"]
            self.runner.run(cmd)
