"""Node watcher: creates the ERdmaDevice object for each owned node."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from erdma.k8s import ERdmaDeviceStore
from erdma.model import FINALIZER, LABEL_INSTANCE_ID, LABEL_NODE_NAME, DeviceInfo, ERdmaDevice
from erdma.reconciler import Result, remove_erdma_devices
from erdma.resolver import EriResolver

logger = logging.getLogger(__name__)


def own_node(node, node_selector: Dict[str, str]) -> bool:
    """Whether ``node`` matches the controller's node selector."""
    if node is None:
        return False
    if not node_selector:
        return True
    labels = (node.metadata.labels if node.metadata else None) or {}
    return all(labels.get(k) == v for k, v in node_selector.items())


def predict_node_update(old, new, node_selector: Dict[str, str]) -> bool:
    """Filter node update events down to the ones that need a reconcile."""
    if not own_node(new, node_selector):
        return False
    if not own_node(old, node_selector):
        return True
    if new.metadata.deletion_timestamp is not None:
        return True
    old_provider = old.spec.provider_id if old.spec else None
    new_provider = new.spec.provider_id if new.spec else None
    return old_provider != new_provider


class NodeReconciler:
    """Resolves a node's ERIs once and publishes them as an ERdmaDevice."""

    name = "node"

    def __init__(
        self,
        store: ERdmaDeviceStore,
        resolver: EriResolver,
        node_selector: Optional[Dict[str, str]] = None,
        core: Optional[client.CoreV1Api] = None,
        wait: Optional[Callable[[str], ERdmaDevice]] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.node_selector = node_selector or {}
        self.core = core or client.CoreV1Api()
        self.wait = wait or store.wait_exists

    def own_node(self, node) -> bool:
        return own_node(node, self.node_selector)

    def predict_node_update(self, old, new) -> bool:
        return predict_node_update(old, new, self.node_selector)

    def reconcile(self, name: str) -> Result:
        try:
            node = self.core.read_node(name)
        except ApiException as e:
            if e.status == 404:
                return remove_erdma_devices(self.store, name)
            logger.error(f"Failed to get node {name}: {e}")
            raise
        if node.metadata.deletion_timestamp is not None:
            return remove_erdma_devices(self.store, name)

        instance_id = self.resolver.instance_id_from_node(node)
        if self.store.list({LABEL_INSTANCE_ID: instance_id}):
            return Result()

        eris = self.resolver.select_eris(instance_id)
        if eris is None:
            logger.info(f"Node {name} ({instance_id}) does not support erdma")
            return Result()

        device = ERdmaDevice(
            name=name,
            devices=[DeviceInfo.from_eri(eri) for eri in eris],
            labels={LABEL_INSTANCE_ID: instance_id, LABEL_NODE_NAME: name},
            finalizers=[FINALIZER],
        )
        self.store.create(device, node)
        # a timeout propagates so the key is retried; the retry finds the object by label
        self.wait(name)
        return Result()
