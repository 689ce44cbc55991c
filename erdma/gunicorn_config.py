"""Gunicorn configuration for the admission webhook.

The controller passes the listen port and certificate directory through
the environment when it launches gunicorn.
"""
import os

bind = f"0.0.0.0:{os.getenv('WEBHOOK_PORT', '9443')}"
workers = int(os.getenv("WEBHOOK_WORKERS", "2"))
timeout = 30
worker_class = "sync"
preload_app = False

_cert_dir = os.getenv("WEBHOOK_CERT_DIR", "")
if _cert_dir:
    certfile = os.path.join(_cert_dir, "tls.crt")
    keyfile = os.path.join(_cert_dir, "tls.key")
