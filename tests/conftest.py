import copy
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from kubernetes.client.exceptions import ApiException

from erdma.cloud import Instance, InstanceType, NetworkInterface
from erdma.errors import CloudAPIError
from erdma.k8s import ERdmaDeviceStore


class FakeCustomObjectsApi:
    """In-memory stand-in for the cluster-scoped custom object calls."""

    def __init__(self):
        self.objects: Dict[str, dict] = {}
        self.calls: List[tuple] = []

    def _match(self, obj, selector):
        if not selector:
            return True
        labels = obj["metadata"].get("labels") or {}
        for term in selector.split(","):
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        return True

    def get_cluster_custom_object(self, group, version, plural, name):
        if name not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[name])

    def list_cluster_custom_object(self, group, version, plural, label_selector=""):
        items = [copy.deepcopy(o) for o in self.objects.values() if self._match(o, label_selector)]
        return {"items": items}

    def create_cluster_custom_object(self, group, version, plural, body):
        self.calls.append(("create", body["metadata"]["name"]))
        self.objects[body["metadata"]["name"]] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def replace_cluster_custom_object_status(self, group, version, plural, name, body):
        self.calls.append(("replace_status", name))
        self.objects[name]["status"] = copy.deepcopy(body.get("status"))
        return copy.deepcopy(self.objects[name])

    def patch_cluster_custom_object(self, group, version, plural, name, body):
        self.calls.append(("patch", name))
        if name not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.objects[name]["metadata"].update(body["metadata"])
        return copy.deepcopy(self.objects[name])

    def delete_cluster_custom_object(self, group, version, plural, name):
        self.calls.append(("delete", name))
        if self.objects.pop(name, None) is None:
            raise ApiException(status=404, reason="Not Found")


class FakeInventory:
    """Cloud inventory backed by plain lists."""

    def __init__(self, instances=None, instance_types=None, enis=None):
        self.instances: Dict[str, Instance] = {i.instance_id: i for i in (instances or [])}
        self.instance_types: List[InstanceType] = list(instance_types or [])
        self.enis: List[NetworkInterface] = list(enis or [])
        self.ip_index: Dict[str, List[Instance]] = {}
        self.created: List[tuple] = []
        self.attached: List[tuple] = []
        self.converted: List[tuple] = []
        self.fail_attach = False
        self.fail_convert = False

    def describe_instance(self, instance_id: str) -> Optional[Instance]:
        return self.instances.get(instance_id)

    def describe_instances_by_private_ip(self, ip: str) -> List[Instance]:
        return list(self.ip_index.get(ip, []))

    def describe_instance_type(self, instance_type: str) -> List[InstanceType]:
        return [t for t in self.instance_types if t.instance_type_id == instance_type]

    def describe_network_interfaces(self, instance_id=None, ids=None, tags=None) -> List[NetworkInterface]:
        result = []
        for eni in self.enis:
            if instance_id is not None and eni.instance_id != instance_id:
                continue
            if ids is not None and eni.id not in ids:
                continue
            if tags and any(eni.tags.get(k) != v for k, v in tags.items()):
                continue
            result.append(eni)
        return result

    def create_network_interface(self, instance, card_index, queue_pair) -> NetworkInterface:
        eni = NetworkInterface(
            id=f"eni-new-{card_index}",
            type="Secondary",
            mac=f"00:16:3e:00:01:{card_index:02x}",
            status="Available",
            traffic_mode="HighPerformance",
            queue_pair_number=queue_pair,
            card_index=card_index,
        )
        self.created.append((instance.instance_id, card_index, queue_pair))
        self.enis.append(eni)
        return eni

    def attach_network_interface(self, eni_id, instance_id, card_index=0):
        if self.fail_attach:
            raise CloudAPIError("AttachNetworkInterface", RuntimeError("quota exceeded"))
        self.attached.append((eni_id, instance_id, card_index))

    def modify_traffic_config(self, eni_id, queue_pair):
        if self.fail_convert:
            raise CloudAPIError("ModifyNetworkInterfaceAttribute", RuntimeError("throttled"))
        self.converted.append((eni_id, queue_pair))


def make_node(name="node-1", provider_id="cn-hangzhou.i-abc", ip="192.168.0.10", labels=None,
              deletion_timestamp=None, uid="uid-1"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}, deletion_timestamp=deletion_timestamp, uid=uid),
        spec=SimpleNamespace(provider_id=provider_id),
        status=SimpleNamespace(addresses=[SimpleNamespace(type="InternalIP", address=ip)]),
    )


@pytest.fixture
def custom_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def store(custom_api):
    return ERdmaDeviceStore(api=custom_api)


@pytest.fixture
def inventory():
    return FakeInventory()
