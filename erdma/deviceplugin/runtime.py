"""Container runtime clients used to inspect pod sandboxes.

Speaks CRI ``runtime.v1`` or ``runtime.v1alpha2`` over gRPC, with the docker
engine API as the fallback behind dockershim.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import docker
from docker.errors import DockerException
import grpc

from erdma.errors import PluginError

logger = logging.getLogger(__name__)

DOCKERSHIM_SOCKET = "/var/run/dockershim.sock"
RUNTIME_ENDPOINTS = [
    DOCKERSHIM_SOCKET,
    "/run/containerd/containerd.sock",
    "/run/k3s/containerd/containerd.sock",
    "/var/run/cri-dockerd.sock",
]
RUNTIME_TIMEOUT_S = 10.0

CRI_V1 = "runtime.v1"
CRI_V1ALPHA2 = "runtime.v1alpha2"

cri_v1_pb2, cri_v1_pb2_grpc = grpc.protos_and_services("erdma/deviceplugin/protos/cri_v1.proto")
cri_v1alpha2_pb2, cri_v1alpha2_pb2_grpc = grpc.protos_and_services("erdma/deviceplugin/protos/cri_v1alpha2.proto")

# v1 and v1alpha2 share field names and numbers
CRI_MESSAGES = {CRI_V1: cri_v1_pb2, CRI_V1ALPHA2: cri_v1alpha2_pb2}
CRI_SERVICES = {CRI_V1: cri_v1_pb2_grpc, CRI_V1ALPHA2: cri_v1alpha2_pb2_grpc}

SANDBOX_READY = cri_v1_pb2.SANDBOX_READY
NAMESPACE_MODE_NODE = cri_v1_pb2.NODE


@dataclass
class Sandbox:
    """Pod sandbox as seen through either CRI version."""
    id: str
    name: str
    namespace: str
    uid: str = ""
    state: int = SANDBOX_READY
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class SandboxStatus:
    id: str
    network_mode: Optional[int] = None
    info: Dict[str, str] = field(default_factory=dict)


def sandbox_from_pb(item) -> Sandbox:
    return Sandbox(
        id=item.id,
        name=item.metadata.name,
        namespace=item.metadata.namespace,
        uid=item.metadata.uid,
        state=item.state,
        labels=dict(item.labels),
        annotations=dict(item.annotations),
    )


def sandbox_status_from_pb(resp) -> SandboxStatus:
    status = resp.status
    network_mode = None
    if status.HasField("linux") and status.linux.HasField("namespaces") and status.linux.namespaces.HasField("options"):
        network_mode = status.linux.namespaces.options.network
    return SandboxStatus(id=status.id, network_mode=network_mode, info=dict(resp.info))


class CRIClient:
    """CRI RuntimeService client negotiating v1 before v1alpha2."""

    def __init__(self, endpoint: str, timeout: float = RUNTIME_TIMEOUT_S) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.channel = grpc.insecure_channel(f"unix://{endpoint}")
        self.package = self._negotiate()
        self.pb = CRI_MESSAGES[self.package]
        self.stub = CRI_SERVICES[self.package].RuntimeServiceStub(self.channel)

    def _negotiate(self) -> str:
        for package in (CRI_V1, CRI_V1ALPHA2):
            stub = CRI_SERVICES[package].RuntimeServiceStub(self.channel)
            try:
                resp = stub.Version(CRI_MESSAGES[package].VersionRequest(version="0.1.0"), timeout=self.timeout)
            except grpc.RpcError as e:
                if e.code() == grpc.StatusCode.UNIMPLEMENTED:
                    continue
                raise PluginError(f"cri version on {self.endpoint}: {e}") from e
            logger.info(f"Connected to {resp.runtime_name} {resp.runtime_version} via {package}")
            return package
        raise PluginError(f"{self.endpoint} supports neither {CRI_V1} nor {CRI_V1ALPHA2}")

    def list_pod_sandbox(self) -> List[Sandbox]:
        try:
            resp = self.stub.ListPodSandbox(self.pb.ListPodSandboxRequest(), timeout=self.timeout)
        except grpc.RpcError as e:
            raise PluginError(f"list pod sandbox: {e}") from e
        return [sandbox_from_pb(item) for item in resp.items]

    def pod_sandbox_status(self, sandbox_id: str, verbose: bool = True) -> SandboxStatus:
        request = self.pb.PodSandboxStatusRequest(pod_sandbox_id=sandbox_id, verbose=verbose)
        try:
            resp = self.stub.PodSandboxStatus(request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise PluginError(f"pod sandbox status {sandbox_id}: {e}") from e
        return sandbox_status_from_pb(resp)

    def close(self) -> None:
        self.channel.close()


@dataclass
class RuntimeClients:
    cri: CRIClient
    engine: Optional[docker.DockerClient] = None


def connect_runtime(endpoints: Optional[List[str]] = None) -> RuntimeClients:
    """Connect to the first reachable runtime endpoint.

    ``RUNTIME_SOCK`` pins a single endpoint. Behind dockershim the docker
    engine client is connected as well.

    Raises:
        PluginError: if no endpoint can be used
    """
    sock = os.getenv("RUNTIME_SOCK")
    if sock:
        if not os.path.exists(sock):
            raise PluginError(f"cannot find cri sock {sock}")
        cri = CRIClient(sock)
        return RuntimeClients(cri=cri, engine=docker.from_env() if sock == DOCKERSHIM_SOCKET else None)

    endpoints = endpoints or RUNTIME_ENDPOINTS
    for candidate in endpoints:
        if not os.path.exists(candidate):
            continue
        try:
            cri = CRIClient(candidate)
            engine = docker.from_env() if candidate == DOCKERSHIM_SOCKET else None
        except (PluginError, DockerException) as e:
            logger.warning(f"Runtime endpoint {candidate} unusable: {e}")
            continue
        logger.info(f"Using runtime endpoint {candidate}")
        return RuntimeClients(cri=cri, engine=engine)
    raise PluginError(f"cannot find valid cri sock in {','.join(endpoints)}")


def parse_sandbox_info(raw: str) -> Dict[str, object]:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise PluginError(f"failed to parse sandbox info: {e}") from e
