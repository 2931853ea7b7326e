"""Destination naming for services synced into Consul."""

from __future__ import annotations

from typing import Optional

from .config import DestinationName, NamingConfig


class NameTranslator:
    """Compute where a Kubernetes workload lands in Consul.

    Translation is a pure function of the configuration and its inputs, so
    it is recomputed on every sync and configuration changes take effect
    without migrating existing registrations.
    """

    def __init__(self, config: Optional[NamingConfig] = None) -> None:
        self._config = config or NamingConfig()

    def translate(
        self,
        source_name: str,
        source_namespace: str,
        override: Optional[str] = None,
    ) -> DestinationName:
        cfg = self._config
        if override:
            # An explicit name is used verbatim, without prefix or suffix.
            name = override
        else:
            name = f"{cfg.prefix}{source_name}"
            if cfg.add_namespace_suffix:
                name = f"{name}-{source_namespace}"

        return DestinationName(name=name, namespace=self.destination_namespace(source_namespace))

    def destination_namespace(self, source_namespace: str) -> str:
        cfg = self._config
        if cfg.mirror_namespaces:
            return f"{source_namespace}{cfg.mirror_namespace_suffix}"
        return cfg.write_namespace
