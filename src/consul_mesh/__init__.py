"""Consul side of the Kubernetes health sync.

This package holds everything that decides *where* and *how* pod health is
written into Consul:

* the namespace allow/deny policy (:mod:`consul_mesh.namespaces`);
* destination naming for synced services (:mod:`consul_mesh.naming`);
* a small client for the Consul agent HTTP API (:mod:`consul_mesh.client`).

It has no dependency on Kubernetes so the policy pieces can be unit tested
in isolation.
"""

from .client import ConsulAgentPool, ConsulAgentRegistry, MeshRegistry  # noqa: F401
from .namespaces import NamespaceFilter  # noqa: F401
from .naming import NameTranslator  # noqa: F401

__all__ = [
    "ConsulAgentPool",
    "ConsulAgentRegistry",
    "MeshRegistry",
    "NameTranslator",
    "NamespaceFilter",
]
