"""Kubelet device plugin for the ``aliyun/erdma`` resource."""

from erdma.deviceplugin.plugin import ERdmaDevicePlugin

__all__ = ["ERdmaDevicePlugin"]
