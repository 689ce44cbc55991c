"""Cloud inventory client.

Thin wrapper around the ECS OpenAPI SDK. Every response is converted into
the plain dataclasses below so the resolver and reconcilers never touch SDK
models directly.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from alibabacloud_credentials.client import Client as CredentialClient
from alibabacloud_credentials.models import Config as CredentialConfig
from alibabacloud_ecs20140526 import models as ecs_models
from alibabacloud_ecs20140526.client import Client as EcsClient
from alibabacloud_tea_openapi import models as open_api_models

from erdma.config import Config, Credentials, public_network
from erdma.errors import CloudAPIError
from erdma.model import TAG_CREATOR_KEY, TAG_CREATOR_VALUE, TAG_INSTANCE_ID_KEY, TRAFFIC_MODE_RDMA

logger = logging.getLogger(__name__)

USER_AGENT = "AlibabaCloud/ERdma-Controller/0.1"
PAGE_SIZE = 100


@dataclass
class Instance:
    instance_id: str
    instance_type: str = ""
    security_group_ids: List[str] = field(default_factory=list)
    vswitch_id: str = ""


@dataclass
class InstanceType:
    instance_type_id: str
    eri_quantity: Optional[int] = None
    network_card_quantity: Optional[int] = None
    queue_pair_number: int = 0
    gpu_amount: int = 0


@dataclass
class NetworkInterface:
    id: str
    type: str = ""
    mac: str = ""
    instance_id: str = ""
    status: Optional[str] = None
    traffic_mode: Optional[str] = None
    queue_pair_number: int = 0
    card_index: Optional[int] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def is_rdma(self) -> bool:
        return self.traffic_mode == TRAFFIC_MODE_RDMA


def build_credential(creds: Credentials) -> CredentialClient:
    """Build a credential provider for the configured credential type."""
    if creds.type == "access_key" or (creds.type == "" and creds.access_key_id):
        logger.info("Using access_key credential")
        return CredentialClient(CredentialConfig(
            type="access_key",
            access_key_id=creds.access_key_id,
            access_key_secret=creds.access_key_secret,
        ))
    if creds.type == "oidc_role_arn":
        logger.info("Using oidc_role_arn credential")
        return CredentialClient(CredentialConfig(
            type="oidc_role_arn",
            role_arn=os.getenv("ALIBABA_CLOUD_ROLE_ARN"),
            oidc_provider_arn=os.getenv("ALIBABA_CLOUD_OIDC_PROVIDER_ARN"),
            oidc_token_file_path=os.getenv("ALIBABA_CLOUD_OIDC_TOKEN_FILE"),
            role_session_name="erdma-controller",
        ))
    if creds.type == "ecs_ram_role":
        logger.info("Using ecs_ram_role credential")
        return CredentialClient(CredentialConfig(type="ecs_ram_role"))
    if creds.type == "":
        logger.info("Using default credential chain")
        return CredentialClient()
    raise ValueError(f"unsupported credential type: {creds.type}")


def new_ecs_client(cfg: Config, creds: Credentials) -> EcsClient:
    network = "public" if public_network() else "vpc"
    return EcsClient(open_api_models.Config(
        credential=build_credential(creds),
        region_id=cfg.region,
        user_agent=USER_AGENT,
        endpoint_type="regional",
        network=network,
    ))


def _convert_instance(item) -> Instance:
    sg = item.security_group_ids.security_group_id if item.security_group_ids else None
    vpc = item.vpc_attributes
    return Instance(
        instance_id=item.instance_id,
        instance_type=item.instance_type or "",
        security_group_ids=list(sg or []),
        vswitch_id=(vpc.v_switch_id if vpc else "") or "",
    )


def _convert_instance_type(item) -> InstanceType:
    return InstanceType(
        instance_type_id=item.instance_type_id,
        eri_quantity=item.eri_quantity,
        network_card_quantity=item.network_card_quantity,
        queue_pair_number=item.queue_pair_number or 0,
        gpu_amount=item.gpuamount or 0,
    )


def _convert_network_interface(item) -> NetworkInterface:
    tags: Dict[str, str] = {}
    if item.tags and item.tags.tag:
        for tag in item.tags.tag:
            if tag.tag_key is not None:
                tags[tag.tag_key] = tag.tag_value or ""
    card_index = None
    if item.attachment is not None and item.attachment.network_card_index is not None:
        card_index = int(item.attachment.network_card_index)
    return NetworkInterface(
        id=item.network_interface_id,
        type=item.type or "",
        mac=item.mac_address or "",
        instance_id=item.instance_id or "",
        status=item.status,
        traffic_mode=item.network_interface_traffic_mode,
        queue_pair_number=item.queue_pair_number or 0,
        card_index=card_index,
        tags=tags,
    )


class CloudInventoryClient:
    """ECS instance and network interface operations used by the controller."""

    def __init__(self, client: EcsClient, region_id: str) -> None:
        self.client = client
        self.region_id = region_id

    def describe_instance(self, instance_id: str) -> Optional[Instance]:
        """Describe an instance by id.

        Returns:
            The instance, or None if the API reports no match.

        Raises:
            CloudAPIError: if the API call fails
        """
        req = ecs_models.DescribeInstancesRequest(
            region_id=self.region_id,
            instance_ids=json.dumps([instance_id]),
        )
        try:
            resp = self.client.describe_instances(req)
        except Exception as e:
            raise CloudAPIError(f"DescribeInstances {instance_id}", e) from e
        items = self._instances(resp)
        return _convert_instance(items[0]) if items else None

    def describe_instances_by_private_ip(self, ip: str) -> List[Instance]:
        req = ecs_models.DescribeInstancesRequest(
            region_id=self.region_id,
            private_ip_addresses=json.dumps([ip]),
        )
        try:
            resp = self.client.describe_instances(req)
        except Exception as e:
            raise CloudAPIError(f"DescribeInstances ip={ip}", e) from e
        return [_convert_instance(i) for i in self._instances(resp)]

    def describe_instance_type(self, instance_type: str) -> List[InstanceType]:
        req = ecs_models.DescribeInstanceTypesRequest(instance_types=[instance_type])
        try:
            resp = self.client.describe_instance_types(req)
        except Exception as e:
            raise CloudAPIError(f"DescribeInstanceTypes {instance_type}", e) from e
        body = resp.body
        if body is None or body.instance_types is None:
            return []
        return [_convert_instance_type(t) for t in body.instance_types.instance_type or []]

    def describe_network_interfaces(
        self,
        instance_id: Optional[str] = None,
        ids: Optional[List[str]] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> List[NetworkInterface]:
        """List network interfaces filtered by instance, interface ids or tags."""
        req = ecs_models.DescribeNetworkInterfacesRequest(
            region_id=self.region_id,
            page_size=PAGE_SIZE,
        )
        if instance_id:
            req.instance_id = instance_id
        if ids:
            req.network_interface_id = list(ids)
        if tags:
            req.tag = [
                ecs_models.DescribeNetworkInterfacesRequestTag(key=k, value=v)
                for k, v in tags.items()
            ]
        try:
            resp = self.client.describe_network_interfaces(req)
        except Exception as e:
            raise CloudAPIError("DescribeNetworkInterfaces", e) from e
        if resp.status_code is not None and resp.status_code != 200:
            raise CloudAPIError(
                "DescribeNetworkInterfaces",
                RuntimeError(f"status code {resp.status_code}"),
            )
        body = resp.body
        if body is None or body.network_interface_sets is None:
            return []
        sets = body.network_interface_sets.network_interface_set or []
        return [_convert_network_interface(i) for i in sets]

    def create_network_interface(self, instance: Instance, card_index: int, queue_pair: int) -> NetworkInterface:
        """Create an RDMA-mode interface for one network card of ``instance``."""
        req = ecs_models.CreateNetworkInterfaceRequest(
            network_interface_name=f"eri-{instance.instance_id}-{card_index}",
            network_interface_traffic_mode=TRAFFIC_MODE_RDMA,
            queue_pair_number=queue_pair,
            region_id=self.region_id,
            security_group_ids=list(instance.security_group_ids),
            tag=[
                ecs_models.CreateNetworkInterfaceRequestTag(key=TAG_CREATOR_KEY, value=TAG_CREATOR_VALUE),
                ecs_models.CreateNetworkInterfaceRequestTag(key=TAG_INSTANCE_ID_KEY, value=instance.instance_id),
            ],
            v_switch_id=instance.vswitch_id,
        )
        try:
            resp = self.client.create_network_interface(req)
        except Exception as e:
            raise CloudAPIError(f"CreateNetworkInterface {instance.instance_id}/{card_index}", e) from e
        logger.info(f"Created ERI {resp.body.network_interface_id} for {instance.instance_id} card {card_index}")
        return NetworkInterface(
            id=resp.body.network_interface_id,
            mac=resp.body.mac_address or "",
            instance_id=instance.instance_id,
            traffic_mode=TRAFFIC_MODE_RDMA,
            queue_pair_number=queue_pair,
            card_index=card_index,
        )

    def modify_traffic_config(self, eni_id: str, queue_pair: int) -> None:
        req = ecs_models.ModifyNetworkInterfaceAttributeRequest(
            region_id=self.region_id,
            network_interface_id=eni_id,
            network_interface_traffic_config=ecs_models.ModifyNetworkInterfaceAttributeRequestNetworkInterfaceTrafficConfig(
                network_interface_traffic_mode=TRAFFIC_MODE_RDMA,
                queue_pair_number=queue_pair,
            ),
        )
        try:
            self.client.modify_network_interface_attribute(req)
        except Exception as e:
            raise CloudAPIError(f"ModifyNetworkInterfaceAttribute {eni_id}", e) from e

    def attach_network_interface(self, eni_id: str, instance_id: str, card_index: int = 0) -> None:
        req = ecs_models.AttachNetworkInterfaceRequest(
            instance_id=instance_id,
            network_interface_id=eni_id,
            region_id=self.region_id,
        )
        if card_index != 0:
            req.network_card_index = card_index
        try:
            self.client.attach_network_interface(req)
        except Exception as e:
            raise CloudAPIError(f"AttachNetworkInterface {eni_id} -> {instance_id}", e) from e

    @staticmethod
    def _instances(resp) -> list:
        body = resp.body
        if body is None or not body.total_count or body.instances is None:
            return []
        return list(body.instances.instance or [])
