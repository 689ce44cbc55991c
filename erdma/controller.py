"""Minimal controller runtime: work queue, watch threads and workers."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from erdma.model import GROUP, PLURAL, VERSION

logger = logging.getLogger(__name__)

BACKOFF_BASE_S = 1.0
BACKOFF_MAX_S = 300.0


class WorkQueue:
    """De-duplicating queue of object keys.

    A key is never handed to two workers at once: adding a key while it is
    being processed marks it dirty and it is queued again on ``done``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._failures: Dict[str, int] = {}
        self._shutdown = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown or key in self._dirty:
                return
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def add_rate_limited(self, key: str) -> float:
        """Requeue a failed key with exponential backoff; returns the delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(BACKOFF_BASE_S * (2 ** failures), BACKOFF_MAX_S)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def _fire(self, key: str) -> None:
        with self._cond:
            self._timers.pop(key, None)
        self.add(key)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        with self._cond:
            if not self._queue and not self._shutdown:
                self._cond.wait(timeout)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._dirty.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller:
    """Runs a reconciler's ``reconcile(name)`` over keys from a work queue."""

    def __init__(self, reconciler, workers: int = 1, queue: Optional[WorkQueue] = None) -> None:
        self.reconciler = reconciler
        self.name = getattr(reconciler, "name", type(reconciler).__name__)
        self.workers = workers
        self.queue = queue or WorkQueue()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._stop_event.clear()
        for i in range(self.workers):
            t = threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info(f"Controller {self.name} started with {self.workers} workers")

    def stop(self) -> None:
        self._stop_event.set()
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout=5)
        self._threads.clear()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: str) -> None:
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"{self.name}: reconcile {key} failed, retrying in {delay:.0f}s: {e}")
            return
        self.queue.forget(key)
        if result is not None and result.requeue_after:
            self.queue.add_after(key, result.requeue_after)


class Watcher:
    """Streams watch events from a list function into a handler.

    The stream is restarted after it ends or fails; a 410 Gone resets the
    resource version so the next stream relists.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable,
        handler: Callable[[str, object], None],
        retry_interval_s: float = 5.0,
        **list_kwargs,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.handler = handler
        self.retry_interval_s = retry_interval_s
        self.list_kwargs = list_kwargs
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watch: Optional[watch.Watch] = None

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._watch_loop, name=f"watch-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._watch is not None:
            self._watch.stop()

    def _watch_loop(self) -> None:
        resource_version = None
        while not self._stop_event.is_set():
            self._watch = watch.Watch()
            kwargs = dict(self.list_kwargs, timeout_seconds=300)
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in self._watch.stream(self.list_fn, **kwargs):
                    if self._stop_event.is_set():
                        break
                    obj = event["object"]
                    resource_version = _resource_version(obj) or resource_version
                    self.handler(event["type"], obj)
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"Watch {self.name} expired, relisting")
                    resource_version = None
                    continue
                logger.error(f"Error watching {self.name}: {e}")
                self._stop_event.wait(self.retry_interval_s)
            except Exception as e:
                logger.error(f"Error watching {self.name}: {e}")
                self._stop_event.wait(self.retry_interval_s)


def _resource_version(obj) -> Optional[str]:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "resource_version", None)


def _object_name(obj) -> Optional[str]:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("name")
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "name", None)


class Manager:
    """Wires the node and ERdmaDevice controllers to their watches."""

    def __init__(self, node_reconciler, device_reconciler, workers: int = 2) -> None:
        self.node_controller = Controller(node_reconciler, workers=workers)
        self.device_controller = Controller(device_reconciler, workers=workers)
        self.node_reconciler = node_reconciler
        self._nodes: Dict[str, object] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self.watchers: List[Watcher] = []

    def on_node_event(self, event_type: str, node) -> None:
        name = _object_name(node)
        if not name:
            return
        with self._lock:
            old = self._nodes.get(name)
            if event_type == "DELETED":
                self._nodes.pop(name, None)
            else:
                self._nodes[name] = node
        if event_type == "MODIFIED" and old is not None:
            if not self.node_reconciler.predict_node_update(old, node):
                return
        elif not self.node_reconciler.own_node(node):
            return
        self.node_controller.queue.add(name)

    def on_device_event(self, event_type: str, obj) -> None:
        name = _object_name(obj)
        if name:
            self.device_controller.queue.add(name)

    def start(self) -> None:
        core = client.CoreV1Api()
        custom = client.CustomObjectsApi()
        self.watchers = [
            Watcher("nodes", core.list_node, self.on_node_event),
            Watcher(
                "erdmadevices",
                custom.list_cluster_custom_object,
                self.on_device_event,
                group=GROUP,
                version=VERSION,
                plural=PLURAL,
            ),
        ]
        self.node_controller.start()
        self.device_controller.start()
        for w in self.watchers:
            w.start()
        logger.info("Manager started")

    def stop(self) -> None:
        self._stop_event.set()
        for w in self.watchers:
            w.stop()
        self.node_controller.stop()
        self.device_controller.stop()
        logger.info("Manager stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()
