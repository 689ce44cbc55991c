"""Resolves the network namespace and SMC-R opt-in of a running pod."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from docker.errors import DockerException

from erdma.deviceplugin.runtime import (
    NAMESPACE_MODE_NODE,
    SANDBOX_READY,
    RuntimeClients,
    parse_sandbox_info,
)
from erdma.errors import PluginError
from erdma.model import SMCR_ANNOTATION

logger = logging.getLogger(__name__)

HOST_NETNS = "/proc/1/ns/net"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass
class PodConfig:
    netns: str
    smcr: bool = False


def parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise PluginError(f"invalid boolean {value!r}")


def _smcr_from(annotations: Optional[dict]) -> bool:
    value = (annotations or {}).get(SMCR_ANNOTATION, "")
    if not value:
        return False
    return parse_bool(value)


def _docker_pod_config(engine, namespace: str, name: str) -> PodConfig:
    filters = {
        "label": [
            "io.kubernetes.docker.type=podsandbox",
            f"io.kubernetes.pod.name={name}",
            f"io.kubernetes.pod.namespace={namespace}",
        ]
    }
    try:
        containers = engine.containers.list(filters=filters)
    except DockerException as e:
        raise PluginError(f"list sandbox of {namespace}/{name}: {e}") from e
    if not containers:
        raise PluginError(f"cannot find sandbox of {namespace}/{name}")

    sandbox = containers[0]
    pid = sandbox.attrs.get("State", {}).get("Pid", 0)
    if not pid:
        raise PluginError(f"sandbox {sandbox.id} of {namespace}/{name} has no running process")
    labels = sandbox.attrs.get("Config", {}).get("Labels") or {}
    value = labels.get(f"annotation.{SMCR_ANNOTATION}", "")
    return PodConfig(netns=f"/proc/{pid}/ns/net", smcr=parse_bool(value) if value else False)


def _cri_pod_config(cri, namespace: str, name: str) -> PodConfig:
    sandbox = None
    for item in cri.list_pod_sandbox():
        if item.namespace == namespace and item.name == name and item.state == SANDBOX_READY:
            sandbox = item
            break
    if sandbox is None:
        raise PluginError(f"cannot find ready sandbox of {namespace}/{name}")

    status = cri.pod_sandbox_status(sandbox.id, verbose=True)
    if status.network_mode == NAMESPACE_MODE_NODE:
        # host network pods never get SMC-R, the node namespace is left alone
        return PodConfig(netns=HOST_NETNS, smcr=False)

    raw = status.info.get("info")
    if not raw:
        raise PluginError(f"sandbox {sandbox.id} reports no verbose info")
    info = parse_sandbox_info(raw)

    annotations = (info.get("config") or {}).get("annotations") or sandbox.annotations
    namespaces = ((info.get("runtimeSpec") or {}).get("linux") or {}).get("namespaces") or []
    netns = ""
    for ns in namespaces:
        if ns.get("type") == "network":
            netns = ns.get("path", "")
            break
    if not netns:
        raise PluginError(f"sandbox {sandbox.id} of {namespace}/{name} has no network namespace")
    return PodConfig(netns=netns, smcr=_smcr_from(annotations))


def get_pod_config(runtime: RuntimeClients, namespace: str, name: str) -> PodConfig:
    """Find where a pod's network lives and whether it asked for SMC-R."""
    if runtime.engine is not None:
        return _docker_pod_config(runtime.engine, namespace, name)
    return _cri_pod_config(runtime.cri, namespace, name)
