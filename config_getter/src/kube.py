from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from config_getter.src.errors import WriteConflictError
from config_getter.src.resource import ConfigMapResource

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def update_config_map(core_api: CoreV1Api, resource: ConfigMapResource) -> ConfigMapResource:
    """Write ``resource.data`` back to the API server.

    The patch carries ``metadata.resourceVersion`` so the API server rejects it
    with ``409 Conflict`` if the ConfigMap changed since it was read.  Labels,
    annotations and other fields are left untouched.
    """
    metadata: dict[str, str] = {}
    if resource.resource_version:
        metadata["resourceVersion"] = resource.resource_version
    body = {"metadata": metadata, "data": dict(resource.data or {})}

    try:
        updated = core_api.patch_namespaced_config_map(
            name=resource.name,
            namespace=resource.namespace,
            body=body,
        )
    except ApiException as exc:
        raise WriteConflictError(
            f"error updating ConfigMap {resource.key}: {exc.status} {exc.reason}",
            status=exc.status,
        ) from exc

    return ConfigMapResource.from_kube(updated)
