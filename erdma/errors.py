"""Exception types raised across the controller and agent."""

from __future__ import annotations


class ERdmaError(Exception):
    """Base class for all errors raised by this package."""


class CloudAPIError(ERdmaError):
    """A call to the cloud inventory API failed."""

    def __init__(self, operation: str, cause: Exception) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class ResolverError(ERdmaError):
    """The ERI resolver could not build an allocation plan."""


class DeviceNotFoundError(ERdmaError):
    """A network interface referenced by a device object does not exist."""


class DriverError(ERdmaError):
    """Installing or probing the kernel RDMA driver failed."""


class PluginError(ERdmaError):
    """The device plugin failed to register or prepare a container."""


class WaitTimeoutError(ERdmaError):
    """A bounded wait for a cluster object expired."""
