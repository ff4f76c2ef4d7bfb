from __future__ import annotations

import logging
import queue
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from config_getter.src.errors import ResourceLookupError
from config_getter.src.metrics import METRICS
from config_getter.src.resource import (
    AddNotification,
    ConfigMapResource,
    Notification,
    UpdateNotification,
)


class ConfigMapInformer:
    """List-then-watch ConfigMaps into a local store and emit typed notifications.

    The informer owns a ``namespace/name``-keyed snapshot of every ConfigMap in
    the watched namespace (all namespaces when ``namespace`` is empty).  Each
    observed change is published on the notification queue handed to
    :meth:`run`:

    - a key seen for the first time yields :class:`AddNotification`;
    - a key already in the store yields :class:`UpdateNotification` with the
      previous snapshot, whether or not its ``resourceVersion`` moved;
    - deletions only drop the key from the store.

    ``has_synced`` turns true once the initial list has been stored and
    published.  Lookups hand out copies so consumers cannot mutate the cache.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str = "",
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, ConfigMapResource] = {}
        self._store_lock = threading.Lock()
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get_by_key(self, key: str) -> tuple[ConfigMapResource | None, bool]:
        if not isinstance(key, str) or not key:
            raise ResourceLookupError(f"invalid cache key {key!r}")
        with self._store_lock:
            resource = self._store.get(key)
        if resource is None:
            return None, False
        return resource.deep_copy(), True

    def list_keys(self) -> list[str]:
        with self._store_lock:
            return sorted(self._store)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.core_api.list_namespaced_config_map, {"namespace": self.namespace}
        return self.core_api.list_config_map_for_all_namespaces, {}

    def _list(self) -> tuple[list[Any], str | None]:
        list_fn, kwargs = self._list_call()
        listing = list_fn(**kwargs)
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return list(getattr(listing, "items", None) or []), resource_version

    @staticmethod
    def _publish(notifications: queue.Queue[Notification], notification: Notification) -> None:
        notifications.put_nowait(notification)

    def _upsert(
        self, resource: ConfigMapResource, notifications: queue.Queue[Notification]
    ) -> None:
        with self._store_lock:
            old = self._store.get(resource.key)
            self._store[resource.key] = resource
        if old is None:
            self._publish(notifications, AddNotification(resource=resource.deep_copy()))
        else:
            self._publish(
                notifications,
                UpdateNotification(old=old.deep_copy(), new=resource.deep_copy()),
            )

    def _replace_store(self, items: list[Any], notifications: queue.Queue[Notification]) -> None:
        """Make the store match a full listing.

        Keys missing from the listing are dropped.  Keys whose
        ``resourceVersion`` did not move are refreshed silently so a re-list
        after ``410 Gone`` only reports real drift.
        """
        seen: set[str] = set()
        for obj in items:
            resource = ConfigMapResource.from_kube(obj)
            if not resource.name:
                continue
            seen.add(resource.key)
            with self._store_lock:
                old = self._store.get(resource.key)
            if old is not None and old.resource_version == resource.resource_version:
                continue
            self._upsert(resource, notifications)

        with self._store_lock:
            for stale_key in set(self._store) - seen:
                del self._store[stale_key]
                self.logger.info("ConfigMap %s disappeared during re-list", stale_key)

    def _handle_event(
        self, event_type: str, obj: Any, notifications: queue.Queue[Notification]
    ) -> None:
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return

        resource = ConfigMapResource.from_kube(obj)
        if not resource.name:
            self.logger.warning("Skipping %s event for ConfigMap without a name", event_type)
            return

        if event_type == "DELETED":
            with self._store_lock:
                self._store.pop(resource.key, None)
            self.logger.debug("ConfigMap %s deleted", resource.key)
            return

        self._upsert(resource, notifications)

    def run(
        self,
        notifications: queue.Queue[Notification],
        stop_event: threading.Event | None = None,
    ) -> None:
        """List then watch ConfigMaps until stopped.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not stop the informer.
        2. Stores and publishes every listed ConfigMap, then marks the cache
           synced.
        3. Opens a watch from the list's ``resourceVersion`` and keeps the
           version current from each event.
        4. On ``410 Gone`` re-lists and publishes the drift.
        5. On other errors backs off (1 s doubling to 30 s, with jitter).

        ``401`` / ``403`` responses are configuration errors (RBAC/auth) and end
        the loop immediately.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self._list()
                self._replace_store(items, notifications)
                self._synced.set()
                self.logger.info(
                    "Listed %d ConfigMap(s); starting watch from resourceVersion %s",
                    len(items),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes ConfigMap list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMap list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_fn, kwargs = self._list_call()
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self._handle_event(str(event.get("type", "")), obj, notifications)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; take a
                # fresh snapshot and resume from it.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        items, resource_version = self._list()
                        self._replace_store(items, notifications)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
