"""ERI resolver: computes and realises the RDMA interface plan for an instance."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from erdma.cloud import CloudInventoryClient, Instance, InstanceType, NetworkInterface
from erdma.errors import ResolverError
from erdma.model import ENI_TYPE_PRIMARY, ERI, TAG_CREATOR_KEY, TAG_CREATOR_VALUE, TAG_INSTANCE_ID_KEY

logger = logging.getLogger(__name__)


def owns_eni(eni: NetworkInterface, manage_non_owned: bool = False) -> bool:
    if manage_non_owned:
        return True
    return eni.tags.get(TAG_CREATOR_KEY) == TAG_CREATOR_VALUE


def card_index_of(eni: NetworkInterface) -> int:
    return eni.card_index if eni.card_index is not None else 0


def to_eri(eni: NetworkInterface, prefer_queue_pair: int) -> ERI:
    """Convert an interface to an ERI, keeping its own queue pair count when set."""
    queue_pair = eni.queue_pair_number if eni.queue_pair_number > 0 else prefer_queue_pair
    return ERI(
        id=eni.id,
        is_primary=eni.type == ENI_TYPE_PRIMARY,
        mac=eni.mac,
        instance_id=eni.instance_id,
        card_index=card_index_of(eni),
        queue_pair=queue_pair,
    )


def entitlement(instance_types: List[InstanceType], instance_type: str) -> Optional[Tuple[int, int]]:
    """Derive ``(card_count, queue_pair_budget)`` for an instance type.

    Returns None when the type does not support ERIs.
    """
    card_count = 0
    queue_pairs = 0
    for t in instance_types:
        if t.eri_quantity is None:
            return None
        if t.instance_type_id == instance_type and t.eri_quantity == 0:
            return None
        if t.network_card_quantity is None or t.network_card_quantity < 2:
            card_count = 1
        else:
            card_count = min(t.network_card_quantity, t.eri_quantity)
        queue_pairs = t.queue_pair_number
        # GPU instances get the per-card budget on every card
        if t.gpu_amount > 0:
            queue_pairs = t.queue_pair_number * card_count
    if card_count == 0:
        return None
    return card_count, queue_pairs


def select_eri_from_exist(
    existing: List[NetworkInterface],
    queue_pair_budget: int,
    card_count: int,
    manage_non_owned: bool = False,
) -> Tuple[List[ERI], List[int], int]:
    """Partition existing interfaces into an allocation plan.

    Args:
        existing: interfaces currently bound to the instance, in API order
        queue_pair_budget: total queue pairs the instance may use
        card_count: number of network cards that can carry an ERI
        manage_non_owned: treat interfaces without the creator tag as owned

    Returns:
        ``(eris, need_create, queue_pair_per_card)``: ERIs kept or converted
        from existing interfaces, card indexes that still need a new
        interface, and the queue pair count for created or converted ones.

    Raises:
        ResolverError: if no interface can anchor the plan
    """
    rdma = [eni for eni in existing if eni.is_rdma]
    existing_queue_pairs = sum(eni.queue_pair_number for eni in rdma)
    logger.info(
        f"Existing ERIs {[eni.id for eni in rdma]} queue_pairs={existing_queue_pairs} "
        f"budget={queue_pair_budget} cards={card_count}"
    )

    selected: List[NetworkInterface] = []
    by_card: Dict[int, NetworkInterface] = {}
    for eni in rdma:
        if not owns_eni(eni, manage_non_owned):
            continue
        index = card_index_of(eni)
        if index not in by_card:
            by_card[index] = eni
            selected.append(eni)

    need_create: List[int] = []
    if existing_queue_pairs <= queue_pair_budget:
        need_create = [i for i in range(card_count) if i not in by_card]

    per_card = 0
    if need_create:
        per_card = (queue_pair_budget - existing_queue_pairs) // len(need_create)
        if per_card > 0:
            if 0 not in by_card:
                # card 0 falls back to converting the primary interface
                for eni in existing:
                    if eni.type == ENI_TYPE_PRIMARY:
                        selected.append(eni)
                        by_card[0] = eni
                        need_create.remove(0)
                        break
            if not by_card:
                raise ResolverError("cannot find node primary ENI or existing ENI")
        else:
            need_create = []

    eris = [to_eri(eni, per_card) for eni in selected]
    if not eris and not need_create:
        raise ResolverError("cannot create ERI for instance due to no available slot")
    return eris, need_create, per_card


def convert_primary_eni(inventory: CloudInventoryClient, eni_id: str, queue_pair: int) -> None:
    """Switch the primary interface to RDMA traffic mode in place."""
    logger.info(f"Converting primary ENI {eni_id} to RDMA mode with {queue_pair} queue pairs")
    inventory.modify_traffic_config(eni_id, queue_pair)


class EriResolver:
    """Resolves the ERI list of a node's instance against the cloud inventory."""

    def __init__(self, inventory: CloudInventoryClient, manage_non_owned: bool = False) -> None:
        self.inventory = inventory
        self.manage_non_owned = manage_non_owned

    def instance_id_from_node(self, node) -> str:
        """Find the instance backing a Kubernetes node.

        The provider id (``<region>.<instance>``) is tried first; when it does
        not resolve, the node's InternalIP is looked up instead.

        Raises:
            ResolverError: if the IP matches zero or several instances
        """
        provider_id = (node.spec.provider_id if node.spec else None) or ""
        parts = provider_id.split(".")
        if provider_id and len(parts) == 2 and parts[1]:
            instance = self.inventory.describe_instance(parts[1])
            if instance is not None:
                return instance.instance_id
            logger.info(f"Instance from providerID {provider_id} not found, falling back to internal IP")

        addresses = (node.status.addresses if node.status else None) or []
        internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), None)
        if internal_ip is None:
            raise ResolverError(f"cannot find instance for node {node.metadata.name}: no internal ip")
        instances = self.inventory.describe_instances_by_private_ip(internal_ip)
        if not instances:
            raise ResolverError(f"cannot find instance from node internal ip {internal_ip}")
        if len(instances) > 1:
            raise ResolverError(f"found multiple instance from node internal ip {internal_ip}")
        return instances[0].instance_id

    def select_eris(self, instance_id: str) -> Optional[List[ERI]]:
        """Build the full ERI list for an instance, creating interfaces as needed.

        Returns:
            The ERIs, or None when the instance type does not support ERIs.
        """
        instance = self.inventory.describe_instance(instance_id)
        if instance is None:
            raise ResolverError(f"cannot find instance {instance_id}")
        types = self.inventory.describe_instance_type(instance.instance_type)
        result = entitlement(types, instance.instance_type)
        if result is None:
            logger.info(f"Instance type {instance.instance_type} of {instance_id} does not support ERI")
            return None
        card_count, queue_pairs = result

        existing = self.inventory.describe_network_interfaces(instance_id=instance_id)
        eris, need_create, per_card = select_eri_from_exist(
            existing, queue_pairs, card_count, self.manage_non_owned
        )
        created = self.create_eri_for_instance(instance, need_create, per_card, exclude={e.id for e in eris})
        return eris + created

    def create_eri_for_instance(
        self,
        instance: Instance,
        card_indexes: List[int],
        queue_pair: int,
        exclude: Optional[set] = None,
    ) -> List[ERI]:
        """Provide one interface per card index, reusing tagged leftovers first."""
        pending = sorted(card_indexes)
        if not pending:
            return []
        exclude = exclude or set()
        leftovers = self.inventory.describe_network_interfaces(tags={
            TAG_CREATOR_KEY: TAG_CREATOR_VALUE,
            TAG_INSTANCE_ID_KEY: instance.instance_id,
        })
        eris: List[ERI] = []
        for eni in leftovers:
            if not pending:
                break
            if eni.id in exclude:
                continue
            eri = to_eri(eni, queue_pair)
            eri.instance_id = instance.instance_id
            eri.card_index = pending.pop(0)
            logger.info(f"Reusing ERI {eri.id} for {instance.instance_id} card {eri.card_index}")
            eris.append(eri)
        while pending:
            card_index = pending.pop(0)
            eni = self.inventory.create_network_interface(instance, card_index, queue_pair)
            eris.append(ERI(
                id=eni.id,
                is_primary=False,
                mac=eni.mac,
                instance_id=instance.instance_id,
                card_index=card_index,
                queue_pair=queue_pair,
            ))
        return eris
