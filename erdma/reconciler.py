"""Device status reconciler for ERdmaDevice objects."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from erdma.cloud import CloudInventoryClient, NetworkInterface
from erdma.errors import CloudAPIError, DeviceNotFoundError
from erdma.k8s import ERdmaDeviceStore
from erdma.model import (
    ENI_STATUS_AVAILABLE,
    ENI_STATUS_IN_USE,
    TRAFFIC_MODE_RDMA,
    DeviceInfo,
    DeviceStatus,
    DeviceStatusPhase,
    LABEL_NODE_NAME,
)
from erdma.resolver import convert_primary_eni

logger = logging.getLogger(__name__)

REQUEUE_AFTER_S = 10.0


@dataclass
class Result:
    """Outcome of one reconcile pass; ``requeue_after`` re-enqueues the key."""
    requeue_after: Optional[float] = None


def _lookup(by_id: Dict[str, NetworkInterface], eni_id: str) -> NetworkInterface:
    eni = by_id.get(eni_id)
    if eni is None:
        raise DeviceNotFoundError(f"cannot find eni {eni_id}")
    if eni.status is None:
        raise DeviceNotFoundError(f"cannot find eni {eni_id} status")
    return eni


def ensure_eri_for_instance(inventory: CloudInventoryClient, devices: List[DeviceInfo]) -> List[DeviceStatus]:
    """Drive every device towards attached, RDMA-mode and ready.

    Missing interfaces and attach or convert failures are reported as
    ``Failed`` entries rather than raised. Devices in no actionable state
    get no entry this pass.

    Raises:
        CloudAPIError: if describing the interfaces fails
    """
    enis = inventory.describe_network_interfaces(ids=[d.id for d in devices])
    by_id = {eni.id: eni for eni in enis}

    statuses: List[DeviceStatus] = []
    for device in devices:
        try:
            eni = _lookup(by_id, device.id)
        except DeviceNotFoundError as e:
            logger.warning(str(e))
            statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.FAILED, message=str(e)))
            continue

        if eni.status == ENI_STATUS_IN_USE and eni.traffic_mode == TRAFFIC_MODE_RDMA:
            statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.READY))

        if not device.is_primary_eni and eni.status == ENI_STATUS_AVAILABLE:
            try:
                inventory.attach_network_interface(device.id, device.instance_id, device.network_card_index)
            except CloudAPIError as e:
                logger.warning(f"Attach {device.id} failed: {e}")
                statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.FAILED, message=str(e)))
            else:
                statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.PENDING))

        if device.is_primary_eni and eni.status == ENI_STATUS_IN_USE and eni.traffic_mode != TRAFFIC_MODE_RDMA:
            try:
                convert_primary_eni(inventory, device.id, device.queue_pair)
            except CloudAPIError as e:
                logger.warning(f"Convert primary {device.id} failed: {e}")
                statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.FAILED, message=str(e)))
            else:
                statuses.append(DeviceStatus(id=device.id, status=DeviceStatusPhase.READY))
    return statuses


def remove_erdma_devices(store: ERdmaDeviceStore, node_name: str) -> Result:
    """Drop the finalizer from and delete every device object of a node."""
    devices = store.list({LABEL_NODE_NAME: node_name})
    for device in devices:
        store.remove_finalizer(device)
    for device in devices:
        store.delete(device.name)
        logger.info(f"Removed ERdmaDevice {device.name} of node {node_name}")
    return Result()


class ERdmaDeviceReconciler:
    """Reconciles the status list of an ERdmaDevice against the cloud."""

    name = "erdma-device"

    def __init__(self, store: ERdmaDeviceStore, inventory: CloudInventoryClient) -> None:
        self.store = store
        self.inventory = inventory

    def reconcile(self, name: str) -> Result:
        device = self.store.get(name)
        if device is None:
            return Result()
        if device.deletion_timestamp:
            return remove_erdma_devices(self.store, name)

        if device.all_ready():
            return Result()

        logger.info(f"Reconciling ERdmaDevice {name}: {len(device.devices)} devices, {len(device.status)} statuses")
        device.status = ensure_eri_for_instance(self.inventory, device.devices)
        self.store.replace_status(device)
        if not device.all_ready():
            return Result(requeue_after=REQUEUE_AFTER_S)
        return Result()
