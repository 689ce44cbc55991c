"""Command line entry points for the controller, the node agent and smcr_init."""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from erdma.agent import Agent
from erdma.cloud import CloudInventoryClient, new_ecs_client
from erdma.config import (
    CONFIG_ENV,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CREDENTIAL_PATH,
    Config,
    load_config,
    load_credentials,
)
from erdma.controller import Manager
from erdma.drivers import default_registry
from erdma.drivers.host import CommandRunner, Sysfs, config_for_net_device, parse_exposed
from erdma.drivers.netdev import NetDevConfigurator
from erdma.errors import ERdmaError
from erdma.k8s import ERdmaDeviceStore, load_kube_config
from erdma.metadata import MetadataClient, MetadataError
from erdma.model import SMCR_PNET_ENV
from erdma.node_controller import NodeReconciler
from erdma.reconciler import ERdmaDeviceReconciler
from erdma.resolver import EriResolver

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
WEBHOOK_PORT = 9443
WEBHOOK_STOP_TIMEOUT_S = 10.0
TCP2SMC = "/proc/sys/net/smc/tcp2smc"
DISABLE_IPV6 = "/proc/sys/net/ipv6/conf/all/disable_ipv6"


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _serve_webhook(cfg: Config, config_path: str, port: int) -> subprocess.Popen:
    """Launch gunicorn serving ``erdma.wsgi:app`` next to the controller."""
    env = dict(os.environ)
    env.update({CONFIG_ENV: config_path, "WEBHOOK_PORT": str(port), "WEBHOOK_CERT_DIR": cfg.cert_dir})
    cmd = [sys.executable, "-m", "gunicorn", "-c", "python:erdma.gunicorn_config", "erdma.wsgi:app"]
    proc = subprocess.Popen(cmd, env=env)
    logger.info(f"Webhook gunicorn started (pid {proc.pid}) on :{port}")
    return proc


def _stop_webhook(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=WEBHOOK_STOP_TIMEOUT_S)
    except subprocess.TimeoutExpired:
        logger.warning(f"Webhook gunicorn {proc.pid} did not stop, killing")
        proc.kill()
        proc.wait()


def controller_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="ERdma controller")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--credential", default=DEFAULT_CREDENTIAL_PATH)
    parser.add_argument("--workers", type=int, default=2, help="reconcile workers per controller")
    parser.add_argument("--webhook-port", type=int, default=WEBHOOK_PORT)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    try:
        cfg = load_config(args.config)
        creds = load_credentials(args.credential)
        load_kube_config()
        inventory = CloudInventoryClient(new_ecs_client(cfg, creds), cfg.region)
    except (ERdmaError, MetadataError, OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Controller startup failed: {e}")
        raise SystemExit(1) from e

    store = ERdmaDeviceStore()
    resolver = EriResolver(inventory, cfg.manage_non_owned_enis)
    manager = Manager(
        NodeReconciler(store, resolver, cfg.node_selector),
        ERdmaDeviceReconciler(store, inventory),
        workers=args.workers,
    )
    webhook = _serve_webhook(cfg, args.config, args.webhook_port) if cfg.enable_webhook else None
    try:
        manager.run_forever()
    finally:
        if webhook is not None:
            _stop_webhook(webhook)


def agent_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="ERdma node agent")
    parser.add_argument("--prefer-driver", default="", help="prefer driver")
    parser.add_argument(
        "--allocate-all-devices",
        action="store_true",
        help="allocate all erdma devices for each resource request instead of the requested ones",
    )
    parser.add_argument(
        "--deviceplugin-prestart-container",
        action="store_true",
        help="configure smc-r in the device plugin prestart hook instead of an injected init container",
    )
    parser.add_argument(
        "--local-eri-discovery",
        action="store_true",
        help="only manage the ERIs found on the node, without the cloud API",
    )
    parser.add_argument(
        "--exposed-local-eris",
        default="",
        help='comma separated "<instance-id> <dev>/<dev>" entries to expose',
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    node_name = os.getenv("NODE_NAME")
    if not node_name:
        logger.error("NODE_NAME is not set")
        raise SystemExit(1)

    try:
        if not args.local_eri_discovery:
            load_kube_config()
        runner = CommandRunner()
        metadata = MetadataClient()
        driver = default_registry().select(
            args.prefer_driver,
            runner=runner,
            sysfs=Sysfs(),
            netdev=NetDevConfigurator(runner, metadata),
        )
        agent = Agent(
            node_name,
            driver,
            alloc_all=args.allocate_all_devices,
            pre_start=args.deviceplugin_prestart_container,
            local_discovery=args.local_eri_discovery,
            exposed=parse_exposed(args.exposed_local_eris),
            metadata=metadata,
            runner=runner,
        )
        agent.run()
    except (ERdmaError, MetadataError) as e:
        logger.error(f"Agent failed: {e}")
        raise SystemExit(1) from e


def smcr_init_main(argv: Optional[List[str]] = None) -> None:
    """Enable SMC-R inside the current pod network namespace."""
    parser = argparse.ArgumentParser(description="Enable SMC-R for the pod")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    pnet = os.getenv(SMCR_PNET_ENV)
    if not pnet:
        logger.error("smcr pnetid is empty")
        raise SystemExit(1)
    if not Path(TCP2SMC).exists():
        logger.error(f"{TCP2SMC} not found, is the smc module loaded?")
        raise SystemExit(1)
    try:
        Path(TCP2SMC).write_text("1")
        Path(DISABLE_IPV6).write_text("1")
        config_for_net_device(CommandRunner(), pnet, "eth0")
    except (OSError, ERdmaError) as e:
        logger.error(f"smcr init failed: {e}")
        raise SystemExit(1) from e
    logger.info(f"SMC-R enabled on eth0 with pnet {pnet}")
