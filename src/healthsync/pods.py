"""Helpers extracting reconciliation inputs from Kubernetes pod objects."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from .events import Key

READY_CONDITION = "Ready"

# Annotation carrying an explicit Consul service name for the pod.
SERVICE_NAME_ANNOTATION = "consul.hashicorp.com/connect-service"

# Only pods processed by the connect injector are registered in Consul.
INJECTED_SELECTOR = "consul.hashicorp.com/connect-inject-status=injected"


def key_for(pod: Any) -> Key:
    metadata = pod.metadata
    return Key(namespace=metadata.namespace, name=metadata.name)


def readiness(pod: Any) -> Tuple[bool, str]:
    """Return ``(ready, reason)`` from the pod's ``Ready`` condition.

    ``reason`` is empty for ready pods. A pod without a ``Ready`` condition
    (e.g. still pending scheduling) is reported as not ready.
    """

    status = getattr(pod, "status", None)
    conditions = getattr(status, "conditions", None) or []
    for condition in conditions:
        if condition.type != READY_CONDITION:
            continue
        if condition.status == "True":
            return True, ""
        return False, condition.message or condition.reason or "readiness probe failed"
    return False, "pod has no Ready condition"


def service_name(pod: Any) -> str:
    """Name the pod's service: its first container, else the pod itself."""

    spec = getattr(pod, "spec", None)
    containers = getattr(spec, "containers", None) or []
    if containers and containers[0].name:
        return containers[0].name
    return pod.metadata.name


def service_name_override(
    pod: Any, annotation: str = SERVICE_NAME_ANNOTATION
) -> Optional[str]:
    annotations = pod.metadata.annotations or {}
    value = annotations.get(annotation)
    return value or None


def host_ip(pod: Any) -> Optional[str]:
    status = getattr(pod, "status", None)
    return getattr(status, "host_ip", None) or None


def parse_selector(selector: Optional[str]) -> Dict[str, str]:
    """Parse an equality based label selector (``k=v,k2=v2``) into a dict."""

    result: Dict[str, str] = {}
    if not selector:
        return result
    for part in selector.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part or "!=" in part:
            raise ValueError(f"unsupported label selector clause '{part}'")
        key, value = part.split("=", 1)
        result[key.strip().rstrip("=")] = value.strip().lstrip("=")
    return result


def matches_selector(pod: Any, selector: Mapping[str, str]) -> bool:
    labels = pod.metadata.labels or {}
    return all(labels.get(k) == v for k, v in selector.items())
