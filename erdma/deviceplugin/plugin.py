"""Kubelet device plugin advertising ERdma device slots on a node."""

from __future__ import annotations

import logging
import os
import re
import sys
import threading
import time
from concurrent import futures
from typing import Callable, Dict, List, Optional

import grpc

from erdma.deviceplugin import api
from erdma.deviceplugin.pod_config import get_pod_config
from erdma.deviceplugin.pod_resources import PodResourcesClient
from erdma.deviceplugin.runtime import RuntimeClients, connect_runtime
from erdma.drivers.host import RDMA_CM_PATH, CommandRunner, Sysfs, config_for_netns_net_device, pnet_id
from erdma.errors import DriverError, PluginError
from erdma.model import RESOURCE_NAME, SMCR_PNET_ENV, ERdmaDeviceInfo

logger = logging.getLogger(__name__)

SLOTS_PER_DEVICE = 200
ADVERTISE_INTERVAL_S = 5.0
RESTART_CHECK_INTERVAL_S = 10.0
REGISTER_TIMEOUT_S = 5.0
SOCKET_PATTERN = re.compile(r".*-erdma\.sock")


def _abort(context, message: str):
    if context is None:
        raise PluginError(message)
    context.abort(grpc.StatusCode.UNKNOWN, message)


class ERdmaDevicePlugin(api.DevicePluginServicer):
    """Serves the ``aliyun/erdma`` resource to the kubelet.

    Every physical device is advertised as ``SLOTS_PER_DEVICE`` slots named
    ``<device>/<n>`` so several containers can share it.
    """

    def __init__(
        self,
        devices: List[ERdmaDeviceInfo],
        alloc_all: bool = False,
        pre_start: bool = False,
        alloc_rdma_cm: bool = False,
        runner: Optional[CommandRunner] = None,
        runtime: Optional[RuntimeClients] = None,
        pod_resources: Optional[PodResourcesClient] = None,
        plugin_dir: str = api.DEVICE_PLUGIN_PATH,
        kubelet_socket: str = api.KUBELET_SOCKET,
        rdma_cm_on_host: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.devices: Dict[str, ERdmaDeviceInfo] = {d.name: d for d in devices}
        self.alloc_all = alloc_all
        self.pre_start = pre_start
        self.runner = runner or CommandRunner()
        self.pod_resources = pod_resources or PodResourcesClient()
        self.runtime = runtime
        if pre_start and self.runtime is None:
            self.runtime = connect_runtime()

        if alloc_rdma_cm:
            on_host = rdma_cm_on_host or Sysfs().rdma_cm_on_host
            alloc_rdma_cm = on_host()
        self.alloc_rdma_cm = alloc_rdma_cm

        self.plugin_dir = plugin_dir
        self.kubelet_socket = kubelet_socket
        self.socket = os.path.join(plugin_dir, f"{int(time.time())}-erdma.sock")

        self._lock = threading.Lock()
        self._server: Optional[grpc.Server] = None
        self._stop_event = threading.Event()
        self._update = threading.Event()

    # ------------------------------------------------------------------
    # Advertisement
    # ------------------------------------------------------------------
    def device_slots(self) -> List:
        slots = []
        for info in self.devices.values():
            topology = api.TopologyInfo(nodes=[api.NUMANode(ID=info.numa)])
            for i in range(SLOTS_PER_DEVICE):
                slots.append(api.Device(ID=f"{info.name}/{i}", health=api.HEALTHY, topology=topology))
        return slots

    def notify(self, signum=None, frame=None) -> None:
        """Re-advertise the device list without waiting for the next tick.

        Usable as a signal handler.
        """
        self._update.set()

    def ListAndWatch(self, request, context):
        response = api.ListAndWatchResponse(devices=self.device_slots())
        stop = self._stop_event
        yield response
        while not stop.is_set():
            self._update.wait(ADVERTISE_INTERVAL_S)
            self._update.clear()
            if stop.is_set() or (context is not None and not context.is_active()):
                return
            yield response

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def GetDevicePluginOptions(self, request, context):
        return api.DevicePluginOptions(pre_start_required=self.pre_start)

    def GetPreferredAllocation(self, request, context):
        return _abort(context, "unsupported")

    def _device_specs(self, paths: List[str]) -> List:
        return [api.DeviceSpec(container_path=p, host_path=p, permissions="rw") for p in paths]

    def Allocate(self, request, context):
        logger.info(f"Allocate request for {len(request.container_requests)} containers")
        response = api.AllocateResponse()
        with self._lock:
            occupied = set()
            for creq in request.container_requests:
                granted: List[ERdmaDeviceInfo] = []
                if self.alloc_all:
                    for info in self.devices.values():
                        if info.name in occupied:
                            continue
                        occupied.add(info.name)
                        granted.append(info)
                else:
                    for dev_id in creq.devices_ids:
                        parts = dev_id.split("/")
                        if len(parts) < 2 or parts[0] in occupied:
                            continue
                        info = self.devices.get(parts[0])
                        if info is None:
                            logger.warning(f"Requested device {dev_id} is not served by this node, skip")
                            continue
                        occupied.add(info.name)
                        granted.append(info)

                paths: List[str] = []
                for info in granted:
                    paths.extend(p for p in info.dev_paths if p not in paths)
                if granted and self.alloc_rdma_cm and RDMA_CM_PATH not in paths:
                    paths.append(RDMA_CM_PATH)

                container = api.ContainerAllocateResponse(devices=self._device_specs(paths))
                if granted:
                    container.envs[SMCR_PNET_ENV] = pnet_id(granted[0].mac)
                response.container_responses.append(container)
        return response

    # ------------------------------------------------------------------
    # Pre-start hook
    # ------------------------------------------------------------------
    def _device_for(self, device_ids) -> Optional[ERdmaDeviceInfo]:
        found = None
        for dev_id in device_ids:
            parts = dev_id.split("/")
            if len(parts) < 2:
                continue
            found = self.devices.get(parts[0], found)
        return found

    def _sysctl(self, netns: str, setting: str) -> None:
        self.runner.run(["nsenter", f"-n/proc/1/root/{netns}", "sysctl", "-w", setting])

    def prepare_container(self, device_ids: List[str]) -> None:
        """Enable SMC-R in the network namespace of the pod owning ``device_ids``.

        Raises:
            PluginError: if the pod, its sandbox or its device cannot be found
            DriverError: if a host command fails
        """
        if not device_ids:
            return
        pod = self.pod_resources.find_pod(device_ids[0])
        if pod is None:
            raise PluginError(f"can not find pod for device {device_ids[0]}")
        namespace, name = pod
        conf = get_pod_config(self.runtime, namespace, name)
        if not conf.smcr:
            return

        logger.info(f"Enabling SMC-R for pod {namespace}/{name} in {conf.netns}")
        self.runner.container_exec("mount | grep ' /proc/sys ' | grep rw || mount -o remount,rw /proc/sys")
        self._sysctl(conf.netns, "net.smc.tcp2smc=1")
        self._sysctl(conf.netns, "net.ipv6.conf.all.disable_ipv6=1")

        info = self._device_for(device_ids)
        if info is None:
            raise PluginError(f"no erdma device mapped for {list(device_ids)}")
        config_for_netns_net_device(self.runner, pnet_id(info.mac), "eth0", conf.netns)

    def PreStartContainer(self, request, context):
        ids = list(request.devices_ids)
        logger.info(f"PreStart request for devices {ids}")
        try:
            self.prepare_container(ids)
        except (PluginError, DriverError) as e:
            logger.error(f"PreStart for {ids} failed: {e}")
            return _abort(context, str(e))
        return api.PreStartContainerResponse()

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------
    def cleanup(self) -> None:
        """Remove plugin sockets left by earlier runs."""
        for entry in os.listdir(self.plugin_dir):
            if not SOCKET_PATTERN.match(entry):
                continue
            try:
                os.unlink(os.path.join(self.plugin_dir, entry))
            except OSError as e:
                logger.error(f"Failed to clean up previous device plugin socket {entry}: {e}")

    def start(self) -> None:
        if self._server is not None:
            self.stop()
        self.cleanup()
        self._stop_event = threading.Event()
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
        api.add_DevicePluginServicer_to_server(self, server)
        if not server.add_insecure_port(f"unix://{self.socket}"):
            raise PluginError(f"failed to listen on {self.socket}")
        server.start()
        self._server = server
        logger.info(f"Device plugin serving on {self.socket}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._stop_event.set()
        self._update.set()
        self._server.stop(grace=None)
        self._server = None
        self.cleanup()

    def register(self) -> None:
        request = api.RegisterRequest(
            version=api.VERSION,
            endpoint=os.path.basename(self.socket),
            resource_name=RESOURCE_NAME,
            options=api.DevicePluginOptions(pre_start_required=self.pre_start),
        )
        with grpc.insecure_channel(f"unix://{self.kubelet_socket}") as channel:
            try:
                grpc.channel_ready_future(channel).result(timeout=REGISTER_TIMEOUT_S)
                api.RegistrationStub(channel).Register(request, timeout=REGISTER_TIMEOUT_S)
            except (grpc.RpcError, grpc.FutureTimeoutError) as e:
                raise PluginError(f"register with kubelet at {self.kubelet_socket}: {e}") from e
        logger.info(f"Registered {RESOURCE_NAME} with kubelet")

    def check_kubelet_restart(self) -> None:
        """Restart and re-register when the kubelet removed our socket."""
        if os.path.exists(self.socket):
            return
        logger.info(f"Device plugin socket {self.socket} removed, restarting")
        self.stop()
        try:
            self.start()
            self.register()
        except PluginError as e:
            logger.error(f"Failed to restart device plugin after kubelet restart: {e}")
            sys.exit(1)

    def serve(self, until: Optional[threading.Event] = None) -> None:
        """Start, register, then watch for kubelet restarts until ``until`` is set."""
        self.start()
        try:
            self.register()
        except PluginError as e:
            logger.error(f"Could not register device plugin: {e}")
            self.stop()
        until = until or threading.Event()
        while not until.wait(RESTART_CHECK_INTERVAL_S):
            self.check_kubelet_restart()
