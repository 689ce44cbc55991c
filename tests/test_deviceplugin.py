import os
import threading

import grpc
import pytest

from erdma.deviceplugin import api
from erdma.deviceplugin.plugin import SLOTS_PER_DEVICE, ERdmaDevicePlugin
from erdma.deviceplugin.pod_config import PodConfig
from erdma.deviceplugin.pod_resources import PodResourcesClient
from erdma.deviceplugin.runtime import NAMESPACE_MODE_NODE, RuntimeClients, Sandbox, SandboxStatus
from erdma.errors import PluginError
from erdma.model import Capability, ERdmaDeviceInfo

ERDMA_0 = ERdmaDeviceInfo(
    name="erdma_0",
    mac="00:16:3e:0a:0b:0c",
    dev_paths=["/dev/infiniband/uverbs0"],
    numa=0,
    capabilities=Capability.VERBS | Capability.SMC_R,
)
ERDMA_1 = ERdmaDeviceInfo(
    name="erdma_1",
    mac="00:16:3e:0a:0b:0d",
    dev_paths=["/dev/infiniband/uverbs1"],
    numa=1,
)


class FakeRunner:
    def __init__(self):
        self.commands = []

    def run(self, args):
        self.commands.append(list(args))
        return ""

    def container_exec(self, cmd):
        self.commands.append(["bash", "-c", cmd])
        return ""


class FakePodResources:
    def __init__(self, pods=None):
        self.pods = pods or {}

    def find_pod(self, device_id):
        for pod, ids in self.pods.items():
            if device_id in ids:
                return pod
        return None


def make_plugin(tmp_path, devices=(ERDMA_0, ERDMA_1), **kwargs):
    kwargs.setdefault("runner", FakeRunner())
    kwargs.setdefault("pod_resources", FakePodResources())
    return ERdmaDevicePlugin(list(devices), plugin_dir=str(tmp_path), **kwargs)


def allocate(plugin, *containers):
    request = api.AllocateRequest(
        container_requests=[api.ContainerAllocateRequest(devices_ids=ids) for ids in containers]
    )
    return plugin.Allocate(request, None)


def test_device_slots(tmp_path):
    slots = make_plugin(tmp_path).device_slots()
    assert len(slots) == 2 * SLOTS_PER_DEVICE
    assert slots[0].ID == "erdma_0/0"
    assert slots[SLOTS_PER_DEVICE].ID == "erdma_1/0"
    assert all(s.health == api.HEALTHY for s in slots)
    assert slots[SLOTS_PER_DEVICE].topology.nodes[0].ID == 1


def test_allocate_requested_device(tmp_path):
    resp = allocate(make_plugin(tmp_path), ["erdma_1/3"])
    [container] = resp.container_responses
    assert [d.host_path for d in container.devices] == ["/dev/infiniband/uverbs1"]
    assert container.devices[0].container_path == "/dev/infiniband/uverbs1"
    assert container.devices[0].permissions == "rw"
    assert container.envs["SMCR_PNET_ID"] == "00163E0A0B0D"


def test_allocate_deduplicates_within_request(tmp_path):
    resp = allocate(make_plugin(tmp_path), ["erdma_0/1", "erdma_0/2"], ["erdma_0/3"])
    first, second = resp.container_responses
    assert len(first.devices) == 1
    assert len(second.devices) == 0
    assert "SMCR_PNET_ID" not in second.envs


def test_allocate_unknown_device_is_skipped(tmp_path):
    resp = allocate(make_plugin(tmp_path), ["erdma_9/0", "malformed"])
    [container] = resp.container_responses
    assert len(container.devices) == 0


def test_allocate_all_devices(tmp_path):
    resp = allocate(make_plugin(tmp_path, alloc_all=True), ["erdma_1/0"], ["erdma_0/0"])
    first, second = resp.container_responses
    assert sorted(d.host_path for d in first.devices) == ["/dev/infiniband/uverbs0", "/dev/infiniband/uverbs1"]
    assert first.envs["SMCR_PNET_ID"] == "00163E0A0B0C"
    assert len(second.devices) == 0


def test_allocate_bundles_rdma_cm(tmp_path):
    plugin = make_plugin(tmp_path, alloc_rdma_cm=True, rdma_cm_on_host=lambda: True)
    [container] = allocate(plugin, ["erdma_0/0"]).container_responses
    assert [d.host_path for d in container.devices] == ["/dev/infiniband/uverbs0", "/dev/infiniband/rdma_cm"]


def test_rdma_cm_dropped_when_missing_on_host(tmp_path):
    plugin = make_plugin(tmp_path, alloc_rdma_cm=True, rdma_cm_on_host=lambda: False)
    assert not plugin.alloc_rdma_cm


def test_options_and_preferred_allocation(tmp_path):
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object())
    assert plugin.GetDevicePluginOptions(api.Empty(), None).pre_start_required
    with pytest.raises(PluginError):
        plugin.GetPreferredAllocation(api.PreferredAllocationRequest(), None)


def test_list_and_watch_stops(tmp_path):
    plugin = make_plugin(tmp_path)
    stream = plugin.ListAndWatch(api.Empty(), None)
    first = next(stream)
    assert len(first.devices) == 2 * SLOTS_PER_DEVICE
    plugin.notify()
    assert len(next(stream).devices) == 2 * SLOTS_PER_DEVICE
    plugin._stop_event.set()
    plugin.notify()
    assert list(stream) == []


def test_cleanup_removes_stale_sockets(tmp_path):
    (tmp_path / "123-erdma.sock").write_text("")
    (tmp_path / "kubelet.sock").write_text("")
    make_plugin(tmp_path).cleanup()
    assert sorted(os.listdir(tmp_path)) == ["kubelet.sock"]


def test_prestart_enables_smcr(tmp_path, monkeypatch):
    runner = FakeRunner()
    pods = FakePodResources({("default", "web"): ["erdma_0/7"]})
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object(), runner=runner, pod_resources=pods)
    monkeypatch.setattr(
        "erdma.deviceplugin.plugin.get_pod_config",
        lambda runtime, ns, name: PodConfig(netns="/proc/42/ns/net", smcr=True),
    )

    resp = plugin.PreStartContainer(api.PreStartContainerRequest(devices_ids=["erdma_0/7"]), None)

    assert isinstance(resp, api.PreStartContainerResponse)
    assert ["nsenter", "-n/proc/1/root//proc/42/ns/net", "sysctl", "-w", "net.smc.tcp2smc=1"] in runner.commands
    assert ["nsenter", "-n/proc/1/root//proc/42/ns/net", "sysctl", "-w",
            "net.ipv6.conf.all.disable_ipv6=1"] in runner.commands
    assert runner.commands[-1] == [
        "nsenter", "-n/proc/1/root//proc/42/ns/net", "--", "smc_pnet", "-a", "00163E0A0B0C", "-I", "eth0",
    ]


def test_prestart_without_smcr_annotation(tmp_path, monkeypatch):
    runner = FakeRunner()
    pods = FakePodResources({("default", "web"): ["erdma_0/7"]})
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object(), runner=runner, pod_resources=pods)
    monkeypatch.setattr(
        "erdma.deviceplugin.plugin.get_pod_config",
        lambda runtime, ns, name: PodConfig(netns="/proc/42/ns/net", smcr=False),
    )
    plugin.prepare_container(["erdma_0/7"])
    assert runner.commands == []


class HostNetworkCRI:
    def list_pod_sandbox(self):
        return [Sandbox(id="sb1", name="web", namespace="default",
                        annotations={"network.alibabacloud.com/erdma-smcr": "true"})]

    def pod_sandbox_status(self, sandbox_id, verbose=True):
        return SandboxStatus(id=sandbox_id, network_mode=NAMESPACE_MODE_NODE)


def test_prestart_leaves_host_network_alone(tmp_path):
    runner = FakeRunner()
    pods = FakePodResources({("default", "web"): ["erdma_0/7"]})
    plugin = make_plugin(tmp_path, pre_start=True, runtime=RuntimeClients(cri=HostNetworkCRI()), runner=runner,
                         pod_resources=pods)

    resp = plugin.PreStartContainer(api.PreStartContainerRequest(devices_ids=["erdma_0/7"]), None)

    assert isinstance(resp, api.PreStartContainerResponse)
    assert runner.commands == []


def test_prestart_unknown_pod(tmp_path):
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object())
    with pytest.raises(PluginError):
        plugin.PreStartContainer(api.PreStartContainerRequest(devices_ids=["erdma_0/1"]), None)


def test_prestart_without_devices(tmp_path):
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object())
    assert isinstance(plugin.PreStartContainer(api.PreStartContainerRequest(), None), api.PreStartContainerResponse)


def test_check_kubelet_restart_reregisters(tmp_path, monkeypatch):
    plugin = make_plugin(tmp_path)
    events = []
    monkeypatch.setattr(plugin, "stop", lambda: events.append("stop"))
    monkeypatch.setattr(plugin, "start", lambda: events.append("start"))
    monkeypatch.setattr(plugin, "register", lambda: events.append("register"))

    plugin.check_kubelet_restart()
    assert events == ["stop", "start", "register"]

    events.clear()
    open(plugin.socket, "w").close()
    plugin.check_kubelet_restart()
    assert events == []


def test_check_kubelet_restart_exits_when_register_fails(tmp_path, monkeypatch):
    plugin = make_plugin(tmp_path)
    monkeypatch.setattr(plugin, "stop", lambda: None)
    monkeypatch.setattr(plugin, "start", lambda: None)

    def fail():
        raise PluginError("kubelet unavailable")

    monkeypatch.setattr(plugin, "register", fail)
    with pytest.raises(SystemExit):
        plugin.check_kubelet_restart()


def test_serve_stops_after_failed_registration(tmp_path, monkeypatch):
    plugin = make_plugin(tmp_path)
    events = []
    monkeypatch.setattr(plugin, "start", lambda: events.append("start"))
    monkeypatch.setattr(plugin, "stop", lambda: events.append("stop"))

    def fail():
        raise PluginError("kubelet unavailable")

    monkeypatch.setattr(plugin, "register", fail)
    until = threading.Event()
    until.set()
    plugin.serve(until)
    assert events == ["start", "stop"]


def test_server_answers_over_unix_socket(tmp_path):
    plugin = make_plugin(tmp_path, pre_start=True, runtime=object())
    plugin.start()
    try:
        with grpc.insecure_channel(f"unix://{plugin.socket}") as channel:
            stub = api.deviceplugin_pb2_grpc.DevicePluginStub(channel)
            options = stub.GetDevicePluginOptions(api.Empty(), timeout=5)
            resp = stub.Allocate(
                api.AllocateRequest(container_requests=[api.ContainerAllocateRequest(devices_ids=["erdma_0/1"])]),
                timeout=5,
            )
    finally:
        plugin.stop()
    assert options.pre_start_required
    assert resp.container_responses[0].envs["SMCR_PNET_ID"] == "00163E0A0B0C"
    assert not os.path.exists(plugin.socket)


def test_pod_resources_maps_device_to_pod(monkeypatch):
    pb = api.podresources_pb2
    listing = pb.ListPodResourcesResponse(pod_resources=[
        pb.PodResources(name="web", namespace="default", containers=[
            pb.ContainerResources(name="app", devices=[
                pb.ContainerDevices(resource_name="aliyun/erdma", device_ids=["erdma_0/7"]),
                pb.ContainerDevices(resource_name="nvidia.com/gpu", device_ids=["gpu-0"]),
            ]),
        ]),
        pb.PodResources(name="db", namespace="default"),
    ])
    client = PodResourcesClient(socket="/nonexistent.sock")
    monkeypatch.setattr(client, "list", lambda: listing)

    assert client.pod_devices() == {("default", "web"): ["erdma_0/7"], ("default", "db"): []}
    assert client.find_pod("erdma_0/7") == ("default", "web")
    assert client.find_pod("gpu-0") is None
