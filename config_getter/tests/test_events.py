from __future__ import annotations

from unittest.mock import MagicMock

from kubernetes.client import ApiException
from prometheus_client import REGISTRY
from urllib3.exceptions import MaxRetryError

from config_getter.src.events import EVENT_TYPE_WARNING, KubeEventRecorder
from config_getter.src.resource import ConfigMapResource


def _resource(namespace: str = "default") -> ConfigMapResource:
    return ConfigMapResource(namespace=namespace, name="jokes", resource_version="7")


def test_eventf_creates_core_event_for_config_map() -> None:
    core_api = MagicMock()
    recorder = KubeEventRecorder(core_api=core_api)

    recorder.eventf(
        _resource(),
        EVENT_TYPE_WARNING,
        "GetFailure",
        "Error processing %s (will retry): %s",
        "default/jokes",
        "no such host",
    )

    call_kwargs = core_api.create_namespaced_event.call_args.kwargs
    event = call_kwargs["body"]
    assert call_kwargs["namespace"] == "default"
    assert event.type == "Warning"
    assert event.reason == "GetFailure"
    assert event.message == "Error processing default/jokes (will retry): no such host"
    assert event.involved_object.kind == "ConfigMap"
    assert event.involved_object.name == "jokes"
    assert event.involved_object.resource_version == "7"
    assert event.source.component == "config-getter"
    assert event.metadata.name.startswith("jokes.")


def test_eventf_without_args_keeps_message_verbatim() -> None:
    core_api = MagicMock()
    recorder = KubeEventRecorder(core_api=core_api)

    recorder.eventf(_resource(), EVENT_TYPE_WARNING, "ParseFailure", "100% broken")

    event = core_api.create_namespaced_event.call_args.kwargs["body"]
    assert event.message == "100% broken"


def test_eventf_swallows_api_errors() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="forbidden")
    recorder = KubeEventRecorder(core_api=core_api)

    recorder.eventf(_resource(), EVENT_TYPE_WARNING, "GetFailure", "boom")

    core_api.create_namespaced_event.assert_called_once()


def test_eventf_defaults_namespace_for_cluster_keys() -> None:
    core_api = MagicMock()
    recorder = KubeEventRecorder(core_api=core_api)

    recorder.eventf(_resource(namespace=""), EVENT_TYPE_WARNING, "LookupFailure", "gone")

    assert core_api.create_namespaced_event.call_args.kwargs["namespace"] == "default"


def test_eventf_swallows_transport_errors_and_counts_them() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = MaxRetryError(
        pool=None, url="/api/v1/namespaces/default/events"
    )
    recorder = KubeEventRecorder(core_api=core_api)
    failed_before = REGISTRY.get_sample_value("config_getter_events_failed_total") or 0.0

    recorder.eventf(_resource(), EVENT_TYPE_WARNING, "GetFailure", "no such host")

    core_api.create_namespaced_event.assert_called_once()
    failed_after = REGISTRY.get_sample_value("config_getter_events_failed_total")
    assert failed_after == failed_before + 1
