"""Controller configuration and cloud credentials."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from erdma.metadata import MetadataClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/erdma-controller/config.json"
DEFAULT_CREDENTIAL_PATH = "/etc/erdma-controller-credential/credential.json"
DEFAULT_SMC_INIT_IMAGE = "registry.cn-hangzhou.aliyuncs.com/erdma/smcr_init:latest"
CONFIG_ENV = "ERDMA_CONFIG"


@dataclass
class Config:
    region: str = ""
    manage_non_owned_enis: bool = False
    controller_namespace: str = ""
    controller_name: str = ""
    cluster_domain: str = ""
    cert_dir: str = ""
    enable_device_plugin: bool = True
    enable_webhook: bool = True
    smc_init_image: str = DEFAULT_SMC_INIT_IMAGE
    enable_init_container_inject: bool = False
    node_selector: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            region=data.get("region") or "",
            manage_non_owned_enis=bool(data.get("manageNonOwnedENIs", False)),
            controller_namespace=data.get("controllerNamespace") or "",
            controller_name=data.get("controllerName") or "",
            cluster_domain=data.get("clusterDomain") or "",
            cert_dir=data.get("certDir") or "",
            enable_device_plugin=bool(data.get("enableDevicePlugin", True)),
            enable_webhook=bool(data.get("enableWebhook", True)),
            smc_init_image=data.get("smcInitImage") or DEFAULT_SMC_INIT_IMAGE,
            enable_init_container_inject=bool(data.get("enableInitContainerInject", False)),
            node_selector=dict(data.get("nodeSelector") or {}),
        )


@dataclass
class Credentials:
    """Cloud API credentials.

    ``type`` is one of ``""`` (default provider chain), ``access_key``,
    ``oidc_role_arn`` or ``ecs_ram_role``. The OIDC and RAM role variants read
    their parameters from the standard ALIBABA_CLOUD_* environment variables.
    """
    type: str = ""
    access_key_id: str = ""
    access_key_secret: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        return cls(
            type=data.get("type") or "",
            access_key_id=data.get("accessKeyID") or "",
            access_key_secret=data.get("accessKeySecret") or "",
        )

    def __repr__(self) -> str:
        return f"Credentials(type={self.type!r}, access_key_id=*******)"


def _read_document(path: str) -> Dict[str, Any]:
    # JSON is a subset of YAML, safe_load reads both
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping, got {type(data).__name__}")
    return data


def load_config(
    path: str = DEFAULT_CONFIG_PATH,
    metadata: Optional[MetadataClient] = None,
    resolve_region: bool = True,
) -> Config:
    """Load the controller config, filling the region from metadata when empty.

    The webhook workers pass ``resolve_region=False``; they never call the
    cloud API.
    """
    cfg = Config.from_dict(_read_document(path))
    if resolve_region and not cfg.region:
        metadata = metadata or MetadataClient()
        cfg.region = metadata.region_id()
        logger.info(f"Region not configured, using metadata region {cfg.region}")
    logger.info(f"Loaded config from {path}: region={cfg.region} node_selector={cfg.node_selector}")
    return cfg


def load_credentials(path: str = DEFAULT_CREDENTIAL_PATH) -> Credentials:
    if not Path(path).exists():
        logger.info(f"Credential file {path} not found, using default credential chain")
        return Credentials()
    return Credentials.from_dict(_read_document(path))


def public_network() -> bool:
    return os.getenv("PUBLIC_NETWORK", "").lower() == "true"
