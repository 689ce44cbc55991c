"""Client for the instance metadata service."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

METADATA_BASE = "http://100.100.100.200/latest/meta-data/"
TOKEN_URL = "http://100.100.100.200/latest/api/token"
TOKEN_TTL_HEADER = "X-aliyun-ecs-metadata-token-ttl-seconds"
TOKEN_HEADER = "X-aliyun-ecs-metadata-token"
TOKEN_TTL_S = 21600

HTTP_TIMEOUT_S = 30
RETRY_STEPS = 4
RETRY_DELAY_S = 0.5
RETRY_FACTOR = 1.2
RETRY_JITTER = 0.1


class MetadataError(Exception):
    """Metadata request failed."""

    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"metadata {url}: {message}")
        self.url = url
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class MetadataClient:
    """Fetches instance and per-MAC network attributes.

    Requests are signed with a session token that is refreshed every
    ``TOKEN_TTL_S / 2`` seconds. A 401 invalidates the token and the request
    is retried once with a fresh token.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    def instance_id(self) -> str:
        return self.get("instance-id")

    def region_id(self) -> str:
        return self.get("region-id")

    def primary_ip(self, mac: str) -> str:
        return self.get(f"network/interfaces/macs/{mac}/primary-ip-address")

    def vswitch_cidr(self, mac: str) -> str:
        return self.get(f"network/interfaces/macs/{mac}/vswitch-cidr-block")

    def gateway(self, mac: str) -> str:
        return self.get(f"network/interfaces/macs/{mac}/gateway")

    def get(self, path: str) -> str:
        url = METADATA_BASE + path
        body = self._with_retry(lambda: self._get_once(url))
        first = body.splitlines()[0] if body else ""
        return first.replace("/", "")

    def _get_once(self, url: str) -> str:
        resp = self._request(url)
        if resp.status_code == 401:
            logger.info("Metadata token rejected, refreshing")
            self._invalidate_token()
            resp = self._request(url)
        if resp.status_code >= 400:
            raise MetadataError(url, f"http {resp.status_code}", status=resp.status_code)
        return resp.text

    def _request(self, url: str) -> requests.Response:
        token = self.token()
        try:
            return self.session.get(url, headers={TOKEN_HEADER: token}, timeout=HTTP_TIMEOUT_S)
        except requests.RequestException as e:
            raise MetadataError(url, str(e)) from e

    def token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token
        token = self._with_retry(self._fetch_token)
        with self._lock:
            self._token = token
            self._token_expiry = self._clock() + TOKEN_TTL_S / 2
        return token

    def _fetch_token(self) -> str:
        try:
            resp = self.session.put(
                TOKEN_URL,
                headers={TOKEN_TTL_HEADER: str(TOKEN_TTL_S)},
                timeout=HTTP_TIMEOUT_S,
            )
        except requests.RequestException as e:
            raise MetadataError(TOKEN_URL, str(e)) from e
        if resp.status_code >= 400:
            raise MetadataError(TOKEN_URL, f"http {resp.status_code}", status=resp.status_code)
        return resp.text.strip()

    def _invalidate_token(self) -> None:
        with self._lock:
            self._token = None
            self._token_expiry = 0.0

    def _with_retry(self, fn: Callable[[], str]) -> str:
        delay = RETRY_DELAY_S
        for attempt in range(1, RETRY_STEPS):
            try:
                return fn()
            except MetadataError as e:
                if not e.retryable:
                    raise
                logger.warning(f"Metadata request failed (attempt {attempt}/{RETRY_STEPS}): {e}")
                self._sleep(delay + delay * RETRY_JITTER * random.random())
                delay *= RETRY_FACTOR
        return fn()
