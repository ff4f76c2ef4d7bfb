from __future__ import annotations

import enum
import functools
import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from kubernetes.client import CoreV1Api

from config_getter.src.errors import ReconcileError, ResourceLookupError
from config_getter.src.events import EVENT_TYPE_WARNING, EventRecorder, KubeEventRecorder
from config_getter.src.fetcher import Fetcher, HTTPFetcher
from config_getter.src.handler import CONTROLLER_ANNOTATION, AnnotationHandler
from config_getter.src.informer import ConfigMapInformer
from config_getter.src.kube import update_config_map
from config_getter.src.metrics import METRICS
from config_getter.src.resource import (
    AddNotification,
    ConfigMapResource,
    Notification,
    UpdateNotification,
)
from config_getter.src.workqueue import RateLimitingQueue

# Retries after the first failed attempt; a key is tried at most MAX_RETRIES + 1
# times per change before it is abandoned.
MAX_RETRIES = 5

CACHE_SYNC_POLL_SECONDS = 0.1
INFORMER_CHECK_SECONDS = 1.0
INFORMER_STOP_TIMEOUT_SECONDS = 5.0


class ControllerState(enum.Enum):
    INITIALIZING = "Initializing"
    SYNCING_CACHE = "SyncingCache"
    READY = "Ready"
    DRAINING = "Draining"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class ControllerStatus:
    """Point-in-time view of the controller served by the health endpoints."""

    state: ControllerState
    synced: bool
    queue_depth: int


class Informer(Protocol):
    def run(
        self,
        notifications: queue.Queue[Notification],
        stop_event: threading.Event | None = None,
    ) -> None: ...

    def has_synced(self) -> bool: ...

    def get_by_key(self, key: str) -> tuple[ConfigMapResource | None, bool]: ...

    def request_stop(self) -> None: ...


class ConfigMapController:
    """Reconcile ConfigMaps carrying the ``x-k8s-io/curl-me-that`` directive.

    The informer publishes typed notifications on :attr:`notifications`; a
    dispatch thread filters them and adds the ConfigMap key to a deduplicating,
    rate-limited work queue.  Worker threads drain the queue: each key is looked
    up in the informer's store, handed to the handler, and the handler's result
    is written back through ``store_writer``.

    Failed attempts are retried with the queue's backoff until the key has been
    requeued ``MAX_RETRIES`` times, after which it is abandoned until a new
    change notification adds it again.  Every failed attempt records one
    Warning event on the ConfigMap.

    Lifecycle (:attr:`state`)::

        Initializing -> SyncingCache -> Ready -> Draining -> Stopped
                              \\___________________________/
                               (cache sync timed out or stopped)
    """

    def __init__(
        self,
        informer: Informer,
        handler: AnnotationHandler,
        store_writer: Callable[[ConfigMapResource], ConfigMapResource],
        recorder: EventRecorder,
        work_queue: RateLimitingQueue | None = None,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 60.0,
        annotation_key: str = CONTROLLER_ANNOTATION,
        logger: logging.Logger | None = None,
        error_handler: Callable[[BaseException], None] | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got: {workers}")

        self.informer = informer
        self.handler = handler
        self.store_writer = store_writer
        self.recorder = recorder
        self.work_queue = (
            work_queue if work_queue is not None else RateLimitingQueue(name="configmaps")
        )
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.annotation_key = annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.error_handler = error_handler or self._log_error

        # Overridable readiness check; tests swap in ``lambda: True``.
        self.has_synced: Callable[[], bool] = informer.has_synced
        self.notifications: queue.Queue[Notification] = queue.Queue()
        self.ready = threading.Event()
        self.state = ControllerState.INITIALIZING
        self._dispatch_stop = threading.Event()

    def _log_error(self, err: BaseException) -> None:
        self.logger.error("Unhandled reconcile error: %s", err)

    def _set_state(self, state: ControllerState) -> None:
        self.logger.debug("Controller state %s -> %s", self.state.value, state.value)
        self.state = state

    def status(self) -> ControllerStatus:
        return ControllerStatus(
            state=self.state,
            synced=self.ready.is_set(),
            queue_depth=len(self.work_queue),
        )

    def should_enqueue(self, notification: Notification) -> bool:
        """Return True when a notification warrants a reconcile pass.

        Adds are always queued.  Updates are queued only when the
        ``resourceVersion`` moved and the new object carries the directive, so
        re-lists and ConfigMaps without a directive never reach the queue.
        """
        if isinstance(notification, AddNotification):
            return True

        old, new = notification.old, notification.new
        if old.resource_version == new.resource_version:
            self.logger.debug("Ignoring update for %s with unchanged resourceVersion", new.key)
            return False
        if self.annotation_key not in new.annotations:
            self.logger.debug("Ignoring update for %s without %s", new.key, self.annotation_key)
            return False
        return True

    def enqueue(self, notification: Notification) -> None:
        if not self.should_enqueue(notification):
            return

        if isinstance(notification, UpdateNotification):
            key = notification.new.key
            self.logger.info("Processing update for %s", key)
        else:
            key = notification.resource.key
            self.logger.info("Processing add for %s", key)
        self.work_queue.add(key)

    def _dispatch_notifications(self) -> None:
        while not self._dispatch_stop.is_set():
            try:
                notification = self.notifications.get(timeout=CACHE_SYNC_POLL_SECONDS)
            except queue.Empty:
                continue
            self.enqueue(notification)

    def wait_for_cache_sync(
        self,
        stop_event: threading.Event,
        informer_alive: Callable[[], bool] | None = None,
    ) -> bool:
        """Block until the informer has synced, *stop_event* fires, or the timeout elapses.

        A ``cache_sync_timeout_seconds`` of zero or less waits without a deadline.
        When *informer_alive* is given, an informer that exits before syncing
        ends the wait early.
        """
        deadline = (
            time.monotonic() + self.cache_sync_timeout_seconds
            if self.cache_sync_timeout_seconds > 0
            else None
        )
        while not self.has_synced():
            if stop_event.is_set():
                return False
            if informer_alive is not None and not informer_alive():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            stop_event.wait(timeout=CACHE_SYNC_POLL_SECONDS)
        return True

    def _run_informer(self, stop: threading.Event) -> None:
        try:
            self.informer.run(self.notifications, stop)
        except Exception:
            self.logger.exception("ConfigMap informer crashed")

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run the controller until *stop_event* is set or the informer exits.

        Starts the informer and the notification dispatcher, waits for the
        cache to sync, then runs ``workers`` worker threads.  On stop the work
        queue is shut down so in-flight items finish and workers exit.  If the
        cache never syncs the controller stops without processing anything.

        An informer that exits without a stop signal (RBAC denial, a crash)
        means no further notifications can arrive, so the controller reports
        it to the error handler and drains as if stopped.
        """
        stop = stop_event or threading.Event()
        self.logger.info("Starting controller")
        self._dispatch_stop.clear()

        informer_thread = threading.Thread(
            target=self._run_informer,
            args=(stop,),
            name="configmap-informer",
            daemon=True,
        )
        dispatch_thread = threading.Thread(
            target=self._dispatch_notifications,
            name="notification-dispatch",
            daemon=True,
        )
        worker_threads: list[threading.Thread] = []

        self._set_state(ControllerState.SYNCING_CACHE)
        informer_thread.start()
        dispatch_thread.start()
        try:
            if not self.wait_for_cache_sync(stop, informer_alive=informer_thread.is_alive):
                if stop.is_set():
                    return
                if not informer_thread.is_alive():
                    self.logger.error("ConfigMap informer exited before caches synced")
                    self.error_handler(RuntimeError("informer exited before caches synced"))
                else:
                    self.error_handler(RuntimeError("timed out waiting for caches to sync"))
                return

            self.logger.info("Controller synced and ready")
            self.ready.set()
            self._set_state(ControllerState.READY)
            for index in range(self.workers):
                worker = threading.Thread(
                    target=self.run_worker,
                    name=f"configmap-worker-{index}",
                    daemon=True,
                )
                worker.start()
                worker_threads.append(worker)

            while not stop.wait(timeout=INFORMER_CHECK_SECONDS):
                if not informer_thread.is_alive():
                    self.logger.error(
                        "ConfigMap informer exited without a stop signal; stopping controller"
                    )
                    self.error_handler(RuntimeError("informer exited unexpectedly"))
                    break

            self._set_state(ControllerState.DRAINING)
            self.logger.info("Draining work queue")
        finally:
            self.ready.clear()
            self.work_queue.shut_down()
            self.informer.request_stop()
            self._dispatch_stop.set()
            for worker in worker_threads:
                worker.join()
            dispatch_thread.join(timeout=1.0)
            informer_thread.join(timeout=INFORMER_STOP_TIMEOUT_SECONDS)
            if informer_thread.is_alive():
                self.logger.warning(
                    "ConfigMap informer did not stop within %ss", INFORMER_STOP_TIMEOUT_SECONDS
                )
            self._set_state(ControllerState.STOPPED)
            self.logger.info("Controller stopped")

    def run_worker(self) -> None:
        while True:
            try:
                if not self.process_next_item():
                    return
            except Exception:
                # process_next_item releases its key in ``finally``; keep serving.
                self.logger.exception("Worker loop error; continuing")

    def process_next_item(self) -> bool:
        """Process one key off the queue.  Returns False when it is time to quit."""
        key, shutdown = self.work_queue.get()
        if shutdown:
            return False

        started = time.monotonic()
        try:
            try:
                result = self.process_item(str(key))
            except ReconcileError as exc:
                self._handle_failure(str(key), exc)
            except Exception as exc:
                self.logger.exception("Unexpected error processing %s", key)
                wrapped = ReconcileError(f"unexpected error processing {key}: {exc}")
                wrapped.__cause__ = exc
                self._handle_failure(str(key), wrapped)
            else:
                self.work_queue.forget(key)
                METRICS.reconcile_total.labels(result=result).inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.work_queue.done(key)

        return True

    def process_item(self, key: str) -> str:
        """Reconcile one ConfigMap; return ``"noop"`` or ``"updated"``.

        Raises :class:`ReconcileError` subclasses for failures that should be
        retried.  A key that is no longer in the cache was deleted and counts
        as success.
        """
        try:
            resource, exists = self.informer.get_by_key(key)
        except ResourceLookupError:
            raise
        except Exception as exc:
            raise ResourceLookupError(
                f"error fetching object with key {key} from store: {exc}"
            ) from exc

        if not exists or resource is None:
            self.logger.info("ConfigMap %s no longer exists; nothing to do", key)
            return "noop"

        updated = self.handler.process(resource)
        if updated is None:
            return "noop"

        self.store_writer(updated)
        self.logger.info("Updated ConfigMap %s", key)
        return "updated"

    def _reference_for(self, key: str) -> ConfigMapResource:
        """Return the cached ConfigMap for event recording, or a bare reference built from *key*."""
        try:
            resource, exists = self.informer.get_by_key(key)
        except Exception:
            self.logger.debug("Cache lookup for %s failed; recording event by key", key)
            resource, exists = None, False
        if exists and resource is not None:
            return resource
        return ConfigMapResource.from_key(key)

    def _record_warning(
        self, reference: ConfigMapResource, reason: str, message_fmt: str, *args: object
    ) -> None:
        try:
            self.recorder.eventf(reference, EVENT_TYPE_WARNING, reason, message_fmt, *args)
        except Exception:
            self.logger.exception("Failed to record %s event on %s", reason, reference.key)

    def _handle_failure(self, key: str, err: ReconcileError) -> None:
        # The queue is updated before the event is recorded so a failing event
        # write can never lose the retry.
        if self.work_queue.num_requeues(key) < MAX_RETRIES:
            self.logger.warning("Error processing %s (will retry): %s", key, err)
            self.work_queue.add_rate_limited(key)
            METRICS.reconcile_total.labels(result="retry").inc()
            self._record_warning(
                self._reference_for(key),
                err.reason,
                "Error processing %s (will retry): %s",
                key,
                err,
            )
            return

        self.logger.error("Error processing %s (giving up): %s", key, err)
        self.work_queue.forget(key)
        METRICS.reconcile_total.labels(result="gave_up").inc()
        self._record_warning(
            self._reference_for(key),
            err.reason,
            "Error processing %s (giving up): %s",
            key,
            err,
        )
        self.error_handler(err)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(
    core_api: CoreV1Api, fetcher: Fetcher | None = None
) -> ConfigMapController:
    """Construct a :class:`ConfigMapController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace to watch; empty watches all namespaces (``""``).
        ``WORKERS``: number of worker threads (``1``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: cache sync deadline, ``0`` disables it (``60``).
        ``FETCH_TIMEOUT_SECONDS``: HTTP timeout for annotation targets (``10``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()
    workers = env_int("WORKERS", 1, minimum=1, maximum=32)
    cache_sync_timeout_seconds = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=0)
    if fetcher is None:
        fetcher = HTTPFetcher(timeout_seconds=env_int("FETCH_TIMEOUT_SECONDS", 10, minimum=1))

    return ConfigMapController(
        informer=ConfigMapInformer(core_api=core_api, namespace=namespace),
        handler=AnnotationHandler(fetcher=fetcher),
        store_writer=functools.partial(update_config_map, core_api),
        recorder=KubeEventRecorder(core_api=core_api),
        workers=workers,
        cache_sync_timeout_seconds=float(cache_sync_timeout_seconds),
    )
