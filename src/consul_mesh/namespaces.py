"""Namespace eligibility policy for syncing."""

from __future__ import annotations

import logging

from .config import WILDCARD_NAMESPACE, NamespacePolicy

LOG = logging.getLogger(__name__)


class NamespaceFilter:
    """Decide whether resources in a Kubernetes namespace may be synced."""

    def __init__(self, policy: NamespacePolicy) -> None:
        self._policy = policy

    def reload(self, policy: NamespacePolicy) -> None:
        """Swap in a new policy; subsequent calls to :meth:`allowed` use it."""

        LOG.info(
            "namespace policy reloaded: source=%r allow=%s deny=%s",
            policy.source_namespace,
            sorted(policy.allow),
            sorted(policy.deny),
        )
        self._policy = policy

    def allowed(self, namespace: str) -> bool:
        policy = self._policy
        if policy.source_namespace:
            return namespace == policy.source_namespace
        if namespace in policy.deny:
            return False
        return WILDCARD_NAMESPACE in policy.allow or namespace in policy.allow
