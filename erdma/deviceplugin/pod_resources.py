"""Client for the kubelet pod resources API."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import grpc

from erdma.deviceplugin import api
from erdma.errors import PluginError
from erdma.model import RESOURCE_NAME

logger = logging.getLogger(__name__)

POD_RESOURCES_TIMEOUT_S = 10.0

PodKey = Tuple[str, str]  # (namespace, name)


class PodResourcesClient:
    def __init__(self, socket: str = api.POD_RESOURCES_SOCKET, timeout: float = POD_RESOURCES_TIMEOUT_S) -> None:
        self.socket = socket
        self.timeout = timeout

    def list(self):
        with grpc.insecure_channel(f"unix://{self.socket}") as channel:
            stub = api.PodResourcesListerStub(channel)
            try:
                return stub.List(api.ListPodResourcesRequest(), timeout=self.timeout)
            except grpc.RpcError as e:
                raise PluginError(f"list pod resources from {self.socket}: {e}") from e

    def pod_devices(self, resource_name: str = RESOURCE_NAME) -> Dict[PodKey, List[str]]:
        """Device ids of ``resource_name`` allocated to each pod."""
        result: Dict[PodKey, List[str]] = {}
        for pr in self.list().pod_resources:
            ids: List[str] = []
            for container in pr.containers:
                for devices in container.devices:
                    if devices.resource_name == resource_name:
                        ids.extend(devices.device_ids)
            result[(pr.namespace, pr.name)] = ids
        return result

    def find_pod(self, device_id: str) -> Optional[PodKey]:
        for pod, ids in self.pod_devices().items():
            if device_id in ids:
                return pod
        return None
