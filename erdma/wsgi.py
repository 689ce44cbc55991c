"""WSGI entry point for the admission webhook, served by gunicorn.

    gunicorn -c python:erdma.gunicorn_config erdma.wsgi:app
"""

from __future__ import annotations

import logging
import os

from flask import Flask

from erdma.config import CONFIG_ENV, DEFAULT_CONFIG_PATH, load_config
from erdma.webhook import create_app

logger = logging.getLogger(__name__)


def build_app() -> Flask:
    path = os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH)
    cfg = load_config(path, resolve_region=False)
    logger.info(f"Webhook app built from {path}, init container inject: {cfg.enable_init_container_inject}")
    return create_app(cfg)


# Build app at module level (for gunicorn)
app = build_app()
