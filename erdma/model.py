"""Data model shared by the controller and the node agent."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Cluster object identity
GROUP = "network.alibabacloud.com"
VERSION = "v1"
PLURAL = "erdmadevices"
KIND = "ERdmaDevice"

FINALIZER = "network.alibabacloud.com/erdma-controller"
LABEL_INSTANCE_ID = "alibabacloud.com/instance-id"
LABEL_NODE_NAME = "alibabacloud.com/nodename"

RESOURCE_NAME = "aliyun/erdma"
SMCR_ANNOTATION = "network.alibabacloud.com/erdma-smcr"
SMCR_PNET_ENV = "SMCR_PNET_ID"

# Cloud inventory vocabulary
TAG_CREATOR_KEY = "creator"
TAG_CREATOR_VALUE = "alibabacloud-erdma-controller"
TAG_INSTANCE_ID_KEY = "instance-id"
TRAFFIC_MODE_RDMA = "HighPerformance"
ENI_TYPE_PRIMARY = "Primary"
ENI_STATUS_IN_USE = "InUse"
ENI_STATUS_AVAILABLE = "Available"


class DeviceStatusPhase(str, enum.Enum):
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


class Capability(enum.IntFlag):
    """Capability bits reported by a driver for a probed device."""

    RDMA_CM = 1
    SMC_R = 2
    VERBS = 4
    GDR = 8
    OOB = 16

    def names(self) -> str:
        parts = [flag.name for flag in Capability if flag in self]
        return ",".join(parts)


@dataclass
class ERI:
    """An elastic network interface in RDMA traffic mode."""
    id: str
    is_primary: bool
    mac: str
    instance_id: str
    card_index: int = 0
    queue_pair: int = 0


@dataclass
class DeviceInfo:
    instance_id: str
    mac: str
    is_primary_eni: bool
    id: str
    network_card_index: int = 0
    queue_pair: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceID": self.instance_id,
            "mac": self.mac,
            "isPrimaryENI": self.is_primary_eni,
            "id": self.id,
            "networkCardIndex": self.network_card_index,
            "queuePair": self.queue_pair,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            instance_id=data.get("instanceID", ""),
            mac=data.get("mac", ""),
            is_primary_eni=bool(data.get("isPrimaryENI", False)),
            id=data.get("id", ""),
            network_card_index=int(data.get("networkCardIndex", 0) or 0),
            queue_pair=int(data.get("queuePair", 0) or 0),
        )

    @classmethod
    def from_eri(cls, eri: ERI) -> "DeviceInfo":
        return cls(
            instance_id=eri.instance_id,
            mac=eri.mac,
            is_primary_eni=eri.is_primary,
            id=eri.id,
            network_card_index=eri.card_index,
            queue_pair=eri.queue_pair,
        )

    def to_eri(self) -> ERI:
        return ERI(
            id=self.id,
            is_primary=self.is_primary_eni,
            mac=self.mac,
            instance_id=self.instance_id,
            card_index=self.network_card_index,
            queue_pair=self.queue_pair,
        )


@dataclass
class DeviceStatus:
    id: str
    status: Optional[DeviceStatusPhase] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        if self.status is not None:
            data["status"] = self.status.value
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceStatus":
        raw = data.get("status")
        return cls(
            id=data.get("id", ""),
            status=DeviceStatusPhase(raw) if raw else None,
            message=data.get("message", ""),
        )


@dataclass
class ERdmaDevice:
    """Per-node device object as stored in the cluster."""
    name: str
    devices: List[DeviceInfo] = field(default_factory=list)
    status: List[DeviceStatus] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None

    def all_ready(self) -> bool:
        if len(self.status) != len(self.devices):
            return False
        return all(s.status == DeviceStatusPhase.READY for s in self.status)

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "labels": dict(self.labels)}
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": KIND,
            "metadata": metadata,
            "spec": {"devices": [d.to_dict() for d in self.devices]},
            "status": {"devices": [s.to_dict() for s in self.status]},
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ERdmaDevice":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            devices=[DeviceInfo.from_dict(d) for d in spec.get("devices") or []],
            status=[DeviceStatus.from_dict(s) for s in status.get("devices") or []],
            labels=dict(metadata.get("labels") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
        )


@dataclass
class ERdmaDeviceInfo:
    """A probed kernel RDMA device on the local node."""
    name: str
    mac: str
    dev_paths: List[str] = field(default_factory=list)
    numa: int = 0
    capabilities: Capability = Capability(0)
