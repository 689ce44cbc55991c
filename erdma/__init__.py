"""Elastic RDMA interface provisioning for Kubernetes nodes.

Modules:
- model: shared data model (ERI, device object, capability flags)
- resolver: ERI allocation plan for an instance
- reconciler / node_controller: cluster-side reconcile loops
- drivers: node-local kernel driver layer
- deviceplugin: kubelet device plugin serving RDMA device slots
"""

__version__ = "0.3.0"
