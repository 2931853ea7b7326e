"""Consul agent client used to read and write TTL health checks.

Checks are written through the *agent* endpoints rather than the catalog so
that they attach to service instances registered on that agent and follow
its anti-entropy. When ``use_host_agent`` is enabled the client agent running
on the pod's node is addressed (``<host-ip>:<agent-port>``), otherwise a
single configured agent address is used.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from .config import CheckStatus, HealthCheckRecord

LOG = logging.getLogger(__name__)

DEFAULT_AGENT_PORT = 8500


class MeshRegistry(ABC):
    """Operations the sync handler needs from the mesh registry."""

    @abstractmethod
    def checks(self, namespace: Optional[str] = None) -> Dict[str, HealthCheckRecord]:
        """Return the checks known to the agent keyed by check id."""

    @abstractmethod
    def register_ttl_check(self, record: HealthCheckRecord, ttl: str) -> None:
        """Create (or replace) a TTL check attached to ``record.service_id``."""

    @abstractmethod
    def update_ttl_check(self, record: HealthCheckRecord) -> None:
        """Set status and output of an existing TTL check, refreshing its TTL."""

    @abstractmethod
    def deregister_check(self, check_id: str, namespace: Optional[str] = None) -> None:
        """Remove the check identified by ``check_id``."""

    @abstractmethod
    def leader(self) -> str:
        """Return the address of the current Consul server leader."""

    def close(self) -> None:
        """Release network resources held by the registry."""


def _parse_status(value: Any) -> CheckStatus:
    try:
        return CheckStatus(str(value).lower())
    except ValueError:
        return CheckStatus.CRITICAL


class ConsulAgentRegistry(MeshRegistry):
    """:class:`MeshRegistry` backed by the Consul agent HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 5.0,
        enable_namespaces: bool = False,
        verify: bool | str = True,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"X-Consul-Token": token} if token else {}
        self._enable_namespaces = enable_namespaces
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    def _params(self, namespace: Optional[str]) -> Dict[str, str]:
        if self._enable_namespaces and namespace:
            return {"ns": namespace}
        return {}

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        resp = self._client.request(method, path, **kwargs)
        resp.raise_for_status()
        return resp

    def checks(self, namespace: Optional[str] = None) -> Dict[str, HealthCheckRecord]:
        resp = self._request("GET", "/v1/agent/checks", params=self._params(namespace))
        payload = resp.json() or {}
        if not isinstance(payload, dict):
            raise ValueError("unexpected /v1/agent/checks payload")

        checks: Dict[str, HealthCheckRecord] = {}
        for check_id, raw in payload.items():
            checks[check_id] = HealthCheckRecord(
                service_id=raw.get("ServiceID", ""),
                check_id=raw.get("CheckID", check_id),
                status=_parse_status(raw.get("Status")),
                output=raw.get("Output", ""),
                name=raw.get("Name", ""),
                namespace=raw.get("Namespace"),
            )
        return checks

    def register_ttl_check(self, record: HealthCheckRecord, ttl: str) -> None:
        body = {
            "Name": record.name,
            "CheckID": record.check_id,
            "ServiceID": record.service_id,
            "TTL": ttl,
            "Status": record.status.value,
        }
        LOG.debug("registering TTL check %s on %s", record.check_id, record.service_id)
        self._request(
            "PUT",
            "/v1/agent/check/register",
            json=body,
            params=self._params(record.namespace),
        )

    def update_ttl_check(self, record: HealthCheckRecord) -> None:
        body = {"Status": record.status.value, "Output": record.output}
        self._request(
            "PUT",
            f"/v1/agent/check/update/{quote(record.check_id, safe='/')}",
            json=body,
            params=self._params(record.namespace),
        )

    def deregister_check(self, check_id: str, namespace: Optional[str] = None) -> None:
        LOG.debug("deregistering check %s", check_id)
        self._request(
            "PUT",
            f"/v1/agent/check/deregister/{quote(check_id, safe='/')}",
            params=self._params(namespace),
        )

    def leader(self) -> str:
        return str(self._request("GET", "/v1/status/leader").json() or "")

    def close(self) -> None:
        self._client.close()


RegistryFactory = Callable[[str], MeshRegistry]


class ConsulAgentPool:
    """Hand out one :class:`MeshRegistry` per Consul agent address."""

    def __init__(
        self,
        address: str = "127.0.0.1",
        *,
        scheme: str = "http",
        agent_port: int = DEFAULT_AGENT_PORT,
        use_host_agent: bool = False,
        token: Optional[str] = None,
        timeout: float = 5.0,
        enable_namespaces: bool = False,
        registry_factory: Optional[RegistryFactory] = None,
    ) -> None:
        self._address = address
        self._scheme = scheme
        self._agent_port = agent_port
        self._use_host_agent = use_host_agent
        self._token = token
        self._timeout = timeout
        self._enable_namespaces = enable_namespaces
        self._factory = registry_factory or self._build_registry
        self._registries: Dict[str, MeshRegistry] = {}
        self._lock = Lock()

    def _build_registry(self, base_url: str) -> MeshRegistry:
        return ConsulAgentRegistry(
            base_url,
            token=self._token,
            timeout=self._timeout,
            enable_namespaces=self._enable_namespaces,
        )

    def base_url(self, host: str) -> str:
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"{self._scheme}://{host}:{self._agent_port}"

    def for_host(self, host: Optional[str]) -> MeshRegistry:
        """Return the registry for the agent on ``host``.

        Falls back to the configured agent address when host routing is
        disabled or the host is unknown.
        """

        target = host if (self._use_host_agent and host) else self._address
        url = self.base_url(target)
        with self._lock:
            registry = self._registries.get(url)
            if registry is None:
                LOG.debug("creating Consul agent client for %s", url)
                registry = self._factory(url)
                self._registries[url] = registry
            return registry

    def default(self) -> MeshRegistry:
        return self.for_host(None)

    def close(self) -> None:
        with self._lock:
            registries = list(self._registries.values())
            self._registries.clear()
        for registry in registries:
            registry.close()
