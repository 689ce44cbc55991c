from erdma.cloud import NetworkInterface
from erdma.model import (
    FINALIZER,
    LABEL_NODE_NAME,
    DeviceInfo,
    DeviceStatus,
    DeviceStatusPhase,
    ERdmaDevice,
)
from erdma.reconciler import ERdmaDeviceReconciler, ensure_eri_for_instance


def iface(eni_id, status="InUse", mode="HighPerformance"):
    return NetworkInterface(id=eni_id, status=status, traffic_mode=mode)


def info(eni_id, primary=False, card=0, qp=8):
    return DeviceInfo(
        instance_id="i-abc",
        mac="00:16:3e:00:00:01",
        is_primary_eni=primary,
        id=eni_id,
        network_card_index=card,
        queue_pair=qp,
    )


def put(custom_api, device):
    body = device.to_dict()
    custom_api.objects[device.name] = body


def test_ready_when_in_use_and_rdma(inventory):
    inventory.enis = [iface("eni-1")]
    statuses = ensure_eri_for_instance(inventory, [info("eni-1")])
    assert statuses == [DeviceStatus("eni-1", DeviceStatusPhase.READY)]


def test_available_secondary_is_attached(inventory):
    inventory.enis = [iface("eni-2", status="Available")]
    statuses = ensure_eri_for_instance(inventory, [info("eni-2", card=1)])
    assert statuses == [DeviceStatus("eni-2", DeviceStatusPhase.PENDING)]
    assert inventory.attached == [("eni-2", "i-abc", 1)]


def test_attach_failure_is_reported_as_failed(inventory):
    inventory.enis = [iface("eni-2", status="Available")]
    inventory.fail_attach = True
    [status] = ensure_eri_for_instance(inventory, [info("eni-2")])
    assert status.status == DeviceStatusPhase.FAILED
    assert "quota exceeded" in status.message


def test_primary_in_normal_mode_is_converted(inventory):
    inventory.enis = [iface("eni-p", mode="Normal")]
    statuses = ensure_eri_for_instance(inventory, [info("eni-p", primary=True, qp=6)])
    assert statuses == [DeviceStatus("eni-p", DeviceStatusPhase.READY)]
    assert inventory.converted == [("eni-p", 6)]


def test_convert_failure_is_reported_as_failed(inventory):
    inventory.enis = [iface("eni-p", mode="Normal")]
    inventory.fail_convert = True
    [status] = ensure_eri_for_instance(inventory, [info("eni-p", primary=True)])
    assert status.status == DeviceStatusPhase.FAILED


def test_unactionable_state_gets_no_status(inventory):
    inventory.enis = [iface("eni-3", status="Attaching")]
    assert ensure_eri_for_instance(inventory, [info("eni-3")]) == []


def test_missing_interface_is_failed_and_others_proceed(inventory):
    inventory.enis = [iface("eni-b", status="Available")]
    statuses = ensure_eri_for_instance(inventory, [info("eni-gone"), info("eni-b", card=1)])
    assert statuses[0].id == "eni-gone"
    assert statuses[0].status == DeviceStatusPhase.FAILED
    assert "cannot find eni eni-gone" in statuses[0].message
    assert statuses[1] == DeviceStatus("eni-b", DeviceStatusPhase.PENDING)
    assert inventory.attached == [("eni-b", "i-abc", 1)]


def test_missing_status_is_failed(inventory):
    inventory.enis = [iface("eni-1", status=None), iface("eni-2")]
    statuses = ensure_eri_for_instance(inventory, [info("eni-1"), info("eni-2", card=1)])
    assert statuses[0].status == DeviceStatusPhase.FAILED
    assert statuses[0].message == "cannot find eni eni-1 status"
    assert statuses[1] == DeviceStatus("eni-2", DeviceStatusPhase.READY)


def test_reconcile_requeues_until_all_ready(store, custom_api, inventory):
    device = ERdmaDevice(
        name="node-1",
        devices=[info("eni-1"), info("eni-2", card=1)],
        status=[DeviceStatus("eni-1", DeviceStatusPhase.PENDING)],
        labels={LABEL_NODE_NAME: "node-1"},
    )
    put(custom_api, device)
    inventory.enis = [iface("eni-1"), iface("eni-2", status="Available")]

    result = ERdmaDeviceReconciler(store, inventory).reconcile("node-1")

    assert result.requeue_after == 10.0
    saved = store.get("node-1")
    assert [s.status for s in saved.status] == [DeviceStatusPhase.READY, DeviceStatusPhase.PENDING]


def test_reconcile_all_ready_does_nothing(store, custom_api, inventory):
    device = ERdmaDevice(
        name="node-1",
        devices=[info("eni-1")],
        status=[DeviceStatus("eni-1", DeviceStatusPhase.READY)],
    )
    put(custom_api, device)
    result = ERdmaDeviceReconciler(store, inventory).reconcile("node-1")
    assert result.requeue_after is None
    assert ("replace_status", "node-1") not in custom_api.calls


def test_reconcile_becomes_ready(store, custom_api, inventory):
    put(custom_api, ERdmaDevice(name="node-1", devices=[info("eni-1")]))
    inventory.enis = [iface("eni-1")]
    result = ERdmaDeviceReconciler(store, inventory).reconcile("node-1")
    assert result.requeue_after is None
    assert store.get("node-1").all_ready()


def test_reconcile_missing_object(store, inventory):
    assert ERdmaDeviceReconciler(store, inventory).reconcile("gone").requeue_after is None


def test_reconcile_deleting_object_drops_finalizer(store, custom_api, inventory):
    device = ERdmaDevice(
        name="node-1",
        devices=[info("eni-1")],
        labels={LABEL_NODE_NAME: "node-1"},
        finalizers=[FINALIZER],
    )
    put(custom_api, device)
    custom_api.objects["node-1"]["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"

    ERdmaDeviceReconciler(store, inventory).reconcile("node-1")

    assert ("patch", "node-1") in custom_api.calls
    assert "node-1" not in custom_api.objects
