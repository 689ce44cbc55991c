"""Mutating admission webhook injecting the SMC-R init container."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from erdma.config import Config, DEFAULT_SMC_INIT_IMAGE
from erdma.model import RESOURCE_NAME, SMCR_ANNOTATION

logger = logging.getLogger(__name__)

SMCR_INIT_NAME = "smcr-init"
SMCR_INIT_COMMAND = "/usr/local/bin/smcr_init"


def requests_erdma(pod: Dict[str, Any]) -> bool:
    spec = pod.get("spec") or {}
    containers = (spec.get("containers") or []) + (spec.get("initContainers") or [])
    for container in containers:
        resources = container.get("resources") or {}
        if RESOURCE_NAME in (resources.get("limits") or {}):
            return True
        if RESOURCE_NAME in (resources.get("requests") or {}):
            return True
    return False


def smcr_init_container(image: str) -> Dict[str, Any]:
    return {
        "name": SMCR_INIT_NAME,
        "image": image or DEFAULT_SMC_INIT_IMAGE,
        "imagePullPolicy": "Always",
        "command": [SMCR_INIT_COMMAND],
        "resources": {
            "requests": {RESOURCE_NAME: "1"},
            "limits": {RESOURCE_NAME: "1"},
        },
        "securityContext": {"privileged": True},
    }


def pod_patch(pod: Dict[str, Any], cfg: Config) -> Optional[List[Dict[str, Any]]]:
    """JSONPatch for a pod, or None when the pod is left untouched."""
    annotations = (pod.get("metadata") or {}).get("annotations") or {}
    if not annotations:
        return None
    if not (requests_erdma(pod) and cfg.enable_device_plugin):
        return None
    if SMCR_ANNOTATION not in annotations or not cfg.enable_init_container_inject:
        return []
    container = smcr_init_container(cfg.smc_init_image)
    if (pod.get("spec") or {}).get("initContainers"):
        return [{"op": "add", "path": "/spec/initContainers/-", "value": container}]
    return [{"op": "add", "path": "/spec/initContainers", "value": [container]}]


def _review(uid: str, allowed: bool = True, message: str = "", patch: Optional[list] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {"uid": uid, "allowed": allowed}
    if message:
        response["status"] = {"message": message}
    if patch:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(patch).encode()).decode()
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": response,
    }


def create_app(cfg: Config) -> Flask:
    app = Flask(__name__)
    app.config["erdma_config"] = cfg

    @app.post("/mutate-pod")
    def mutate_pod() -> Any:
        body: Dict[str, Any] = request.get_json(force=True) or {}
        req = body.get("request") or {}
        uid = req.get("uid", "")
        cfg: Config = app.config["erdma_config"]
        if not cfg.enable_webhook:
            return jsonify(_review(uid, message="webhook not enabled"))
        if (req.get("kind") or {}).get("kind") != "Pod":
            return jsonify(_review(uid, message="not care"))

        pod = req.get("object")
        if not isinstance(pod, dict):
            return jsonify(_review(uid, allowed=False, message="failed decoding pod")), 400
        patch = pod_patch(pod, cfg)
        if patch is None:
            return jsonify(_review(uid, message="not rdma"))
        if patch:
            logger.info(f"Patch pod {req.get('namespace')}/{req.get('name') or (pod.get('metadata') or {}).get('generateName')} for erdma")
        return jsonify(_review(uid, patch=patch))

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok"})

    @app.get("/readyz")
    def readyz() -> Any:
        return jsonify({"status": "ok"})

    return app
