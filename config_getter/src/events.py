from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from config_getter.src.metrics import METRICS
from config_getter.src.resource import ConfigMapResource

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
COMPONENT_NAME = "config-getter"


class EventRecorder(Protocol):
    def eventf(
        self,
        resource: ConfigMapResource,
        event_type: str,
        reason: str,
        message_fmt: str,
        *args: Any,
    ) -> None: ...


class KubeEventRecorder:
    """Record ``core/v1`` Events against ConfigMaps.

    Events are best effort: any error while creating one is logged and
    counted, never raised into the reconcile loop.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = COMPONENT_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or logging.getLogger(__name__)

    def _build_event(
        self, resource: ConfigMapResource, event_type: str, reason: str, message: str
    ) -> CoreV1Event:
        now = datetime.now(UTC)
        return CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{resource.name}.{time.time_ns():x}",
                namespace=resource.namespace or "default",
            ),
            involved_object=V1ObjectReference(
                api_version="v1",
                kind="ConfigMap",
                name=resource.name,
                namespace=resource.namespace,
                resource_version=resource.resource_version,
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def eventf(
        self,
        resource: ConfigMapResource,
        event_type: str,
        reason: str,
        message_fmt: str,
        *args: Any,
    ) -> None:
        message = message_fmt % args if args else message_fmt
        event = self._build_event(resource, event_type, reason, message)
        try:
            self.core_api.create_namespaced_event(
                namespace=resource.namespace or "default",
                body=event,
            )
        except ApiException as exc:
            METRICS.events_failed_total.inc()
            self.logger.error(
                "API server rejected %s event %s on %s (status=%s): %s",
                event_type,
                reason,
                resource.key,
                exc.status,
                exc.reason,
            )
        except Exception:
            # Transport failures (API server unreachable, timeouts) surface as
            # urllib3 errors rather than ApiException.
            METRICS.events_failed_total.inc()
            self.logger.exception(
                "Failed to record %s event %s on %s", event_type, reason, resource.key
            )
