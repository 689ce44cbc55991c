"""Kubernetes access for ERdmaDevice objects."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, TypeVar

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from erdma.errors import WaitTimeoutError
from erdma.model import FINALIZER, GROUP, LABEL_NODE_NAME, PLURAL, VERSION, ERdmaDevice

logger = logging.getLogger(__name__)

T = TypeVar("T")


def load_kube_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def poll(
    condition: Callable[[], Optional[T]],
    interval: float,
    timeout: float,
    what: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``condition`` until it returns a value, at most ``timeout`` seconds.

    Raises:
        WaitTimeoutError: if the deadline passes first
    """
    deadline = clock() + timeout
    while True:
        result = condition()
        if result is not None:
            return result
        if clock() + interval > deadline:
            raise WaitTimeoutError(f"timed out after {timeout}s waiting for {what}")
        sleep(interval)


class ERdmaDeviceStore:
    """CRUD for the cluster-scoped ERdmaDevice custom resource."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None) -> None:
        self.api = api or client.CustomObjectsApi()

    def get(self, name: str) -> Optional[ERdmaDevice]:
        try:
            obj = self.api.get_cluster_custom_object(GROUP, VERSION, PLURAL, name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return ERdmaDevice.from_dict(obj)

    def list(self, labels: Dict[str, str]) -> List[ERdmaDevice]:
        resp = self.api.list_cluster_custom_object(
            GROUP, VERSION, PLURAL, label_selector=label_selector(labels)
        )
        return [ERdmaDevice.from_dict(item) for item in resp.get("items", [])]

    def create(self, device: ERdmaDevice, node) -> ERdmaDevice:
        """Create ``device`` owned by ``node`` so it is collected with it."""
        body = device.to_dict()
        body.pop("status", None)
        body["metadata"]["ownerReferences"] = [{
            "apiVersion": "v1",
            "kind": "Node",
            "name": node.metadata.name,
            "uid": node.metadata.uid,
        }]
        obj = self.api.create_cluster_custom_object(GROUP, VERSION, PLURAL, body)
        logger.info(f"Created ERdmaDevice {device.name} with {len(device.devices)} devices")
        return ERdmaDevice.from_dict(obj)

    def replace_status(self, device: ERdmaDevice) -> ERdmaDevice:
        obj = self.api.replace_cluster_custom_object_status(
            GROUP, VERSION, PLURAL, device.name, device.to_dict()
        )
        return ERdmaDevice.from_dict(obj)

    def remove_finalizer(self, device: ERdmaDevice) -> None:
        if FINALIZER not in device.finalizers:
            return
        finalizers = [f for f in device.finalizers if f != FINALIZER]
        try:
            self.api.patch_cluster_custom_object(
                GROUP, VERSION, PLURAL, device.name, {"metadata": {"finalizers": finalizers}}
            )
        except ApiException as e:
            if e.status != 404:
                raise
        device.finalizers = finalizers

    def delete(self, name: str) -> None:
        try:
            self.api.delete_cluster_custom_object(GROUP, VERSION, PLURAL, name)
        except ApiException as e:
            if e.status != 404:
                raise

    def wait_exists(self, name: str, interval: float = 0.5, timeout: float = 2.0, **kwargs) -> ERdmaDevice:
        return poll(lambda: self.get(name), interval, timeout, f"ERdmaDevice {name}", **kwargs)

    def wait_node_device(self, node_name: str, interval: float = 60.0, timeout: float = 60.0, **kwargs) -> ERdmaDevice:
        """Wait for the controller to publish the device object of ``node_name``."""
        def first() -> Optional[ERdmaDevice]:
            items = self.list({LABEL_NODE_NAME: node_name})
            if not items:
                logger.info(f"Waiting for ERdmaDevice of node {node_name}")
                return None
            return items[0]

        return poll(first, interval, timeout, f"ERdmaDevice of node {node_name}", **kwargs)
