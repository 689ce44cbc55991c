"""Kubelet device plugin (v1beta1) and pod resources (v1) wire types.

Message and service modules are generated from ``protos/*.proto`` by
grpcio-tools the first time this module is imported.
"""

from __future__ import annotations

import grpc

VERSION = "v1beta1"
DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
HEALTHY = "Healthy"

POD_RESOURCES_SOCKET = "/var/lib/kubelet/pod-resources/kubelet.sock"

deviceplugin_pb2, deviceplugin_pb2_grpc = grpc.protos_and_services("erdma/deviceplugin/protos/deviceplugin.proto")
podresources_pb2, podresources_pb2_grpc = grpc.protos_and_services("erdma/deviceplugin/protos/podresources.proto")

Empty = deviceplugin_pb2.Empty
DevicePluginOptions = deviceplugin_pb2.DevicePluginOptions
RegisterRequest = deviceplugin_pb2.RegisterRequest
NUMANode = deviceplugin_pb2.NUMANode
TopologyInfo = deviceplugin_pb2.TopologyInfo
Device = deviceplugin_pb2.Device
ListAndWatchResponse = deviceplugin_pb2.ListAndWatchResponse
PreStartContainerRequest = deviceplugin_pb2.PreStartContainerRequest
PreStartContainerResponse = deviceplugin_pb2.PreStartContainerResponse
PreferredAllocationRequest = deviceplugin_pb2.PreferredAllocationRequest
PreferredAllocationResponse = deviceplugin_pb2.PreferredAllocationResponse
ContainerAllocateRequest = deviceplugin_pb2.ContainerAllocateRequest
AllocateRequest = deviceplugin_pb2.AllocateRequest
DeviceSpec = deviceplugin_pb2.DeviceSpec
ContainerAllocateResponse = deviceplugin_pb2.ContainerAllocateResponse
AllocateResponse = deviceplugin_pb2.AllocateResponse

DevicePluginServicer = deviceplugin_pb2_grpc.DevicePluginServicer
add_DevicePluginServicer_to_server = deviceplugin_pb2_grpc.add_DevicePluginServicer_to_server
RegistrationStub = deviceplugin_pb2_grpc.RegistrationStub

ListPodResourcesRequest = podresources_pb2.ListPodResourcesRequest
ListPodResourcesResponse = podresources_pb2.ListPodResourcesResponse

PodResourcesListerStub = podresources_pb2_grpc.PodResourcesListerStub
