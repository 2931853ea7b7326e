"""Sync Kubernetes pod readiness into Consul TTL health checks.

When a readiness probe fails and Kubernetes marks the pod unready, the
transition is written to Consul as a ``critical`` TTL check on the pod's
service instance so that Consul stops routing traffic to it. When the pod
becomes ready again the same check is flipped back to ``passing``.

Only checks following the managed id scheme and carrying the managed check
name are ever modified, so independently registered checks on the same
service instance are left alone.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, Mapping, Optional

from kubernetes.client import ApiException

from consul_mesh.client import ConsulAgentPool, MeshRegistry
from consul_mesh.config import CheckStatus, HealthCheckRecord
from consul_mesh.namespaces import NamespaceFilter
from consul_mesh.naming import NameTranslator
from healthsync import pods
from healthsync.events import Key

from .base import Handler

LOG = logging.getLogger(__name__)

CHECK_NAME = "Kubernetes Health Check"
CHECK_ID_SUFFIX = "kubernetes-health-check"
DEFAULT_CHECK_TTL = "100000h"
PASSING_OUTPUT = "Kubernetes health checks passing"


def check_id_for(key: Key) -> str:
    return f"{key.namespace}/{key.name}/{CHECK_ID_SUFFIX}"


def service_id_for(pod_name: str, service_name: str) -> str:
    return f"{pod_name}-{service_name}"


class HealthCheckHandler(Handler):
    """Reconcile the managed TTL check for one pod."""

    def __init__(
        self,
        core_api: Any,
        agents: ConsulAgentPool,
        namespaces: NamespaceFilter,
        names: NameTranslator,
        *,
        label_selector: Optional[Mapping[str, str]] = None,
        service_annotation: str = pods.SERVICE_NAME_ANNOTATION,
        check_ttl: str = DEFAULT_CHECK_TTL,
    ) -> None:
        self._core_api = core_api
        self._agents = agents
        self._namespaces = namespaces
        self._names = names
        self._selector = dict(label_selector or {})
        self._service_annotation = service_annotation
        self._check_ttl = check_ttl
        # Node of every pod seen so deletions reach the agent holding the check.
        self._hosts: Dict[Key, Optional[str]] = {}
        self._hosts_lock = Lock()

    def handle(self, key: Key) -> None:
        pod = self._read_pod(key)
        if pod is None or not pods.matches_selector(pod, self._selector):
            self._remove_check(key)
            return

        if not self._namespaces.allowed(key.namespace):
            LOG.debug("namespace %s is not allowed, skipping %s", key.namespace, key)
            return

        ready, reason = pods.readiness(pod)
        destination = self._names.translate(
            pods.service_name(pod),
            key.namespace,
            pods.service_name_override(pod, self._service_annotation),
        )
        record = HealthCheckRecord(
            service_id=service_id_for(key.name, destination.name),
            check_id=check_id_for(key),
            status=CheckStatus.PASSING if ready else CheckStatus.CRITICAL,
            output=PASSING_OUTPUT if ready else f'Pod "{key}" is not ready: {reason}',
            name=CHECK_NAME,
            namespace=destination.namespace,
        )

        host = pods.host_ip(pod)
        with self._hosts_lock:
            self._hosts[key] = host
        self._upsert(self._agents.for_host(host), record)

    def _read_pod(self, key: Key) -> Optional[Any]:
        try:
            return self._core_api.read_namespaced_pod(key.name, key.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _upsert(self, registry: MeshRegistry, record: HealthCheckRecord) -> None:
        existing = registry.checks(record.namespace).get(record.check_id)
        if existing is not None and existing.name != CHECK_NAME:
            LOG.warning(
                "check %s exists but is not managed by healthsync (name=%r), leaving it alone",
                record.check_id,
                existing.name,
            )
            return

        if existing is None:
            LOG.info(
                "registering health check %s for service instance %s",
                record.check_id,
                record.service_id,
            )
            registry.register_ttl_check(record, self._check_ttl)
        elif existing.status is not record.status:
            LOG.info(
                "health check %s transitioned %s -> %s",
                record.check_id,
                existing.status.value,
                record.status.value,
            )

        registry.update_ttl_check(record)

    def _remove_check(self, key: Key) -> None:
        with self._hosts_lock:
            host = self._hosts.pop(key, None)
        registry = self._agents.for_host(host)
        namespace = self._names.destination_namespace(key.namespace)
        check_id = check_id_for(key)

        existing = registry.checks(namespace).get(check_id)
        if existing is None:
            LOG.debug("pod %s is gone and has no managed check", key)
            return
        if existing.name != CHECK_NAME:
            LOG.debug("pod %s is gone; check %s is not managed, leaving it", key, check_id)
            return

        LOG.info("pod %s is gone, deregistering health check %s", key, check_id)
        registry.deregister_check(check_id, namespace)
