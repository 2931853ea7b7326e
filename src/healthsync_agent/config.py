"""Configuration loader for the healthsync agent.

Settings come from an optional YAML file and are then overridden by command
line flags. Once merged they are converted into the immutable values the
engine components take in their constructors.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from consul_mesh.config import NamespacePolicy, NamingConfig
from healthsync.pods import INJECTED_SELECTOR, parse_selector

LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class ConsulConfig:
    address: str = "127.0.0.1"
    scheme: str = "http"
    agent_port: int = 8500
    use_host_agent: bool = False
    token: Optional[str] = None
    timeout: float = 5.0
    enable_namespaces: bool = False
    check_ttl: str = "100000h"


@dataclass
class KubernetesConfig:
    kubeconfig: Optional[Path] = None
    label_selector: str = INJECTED_SELECTOR
    watch_timeout: int = 300
    resync_period: float = 0.0


@dataclass
class SyncConfig:
    k8s_source_namespace: str = ""
    allow_k8s_namespaces: List[str] = field(default_factory=list)
    deny_k8s_namespaces: List[str] = field(default_factory=list)
    k8s_service_prefix: str = ""
    add_k8s_namespace_suffix: bool = False
    k8s_write_namespace: str = "default"
    mirror_k8s_namespaces: bool = False
    mirror_namespace_suffix: str = ""
    max_retries: int = 10
    workers: int = 1
    retry_base_delay: float = 0.005
    retry_max_delay: float = 1000.0

    def namespace_policy(self) -> NamespacePolicy:
        return NamespacePolicy.build(
            source_namespace=self.k8s_source_namespace,
            allow=self.allow_k8s_namespaces,
            deny=self.deny_k8s_namespaces,
        )

    def naming(self) -> NamingConfig:
        return NamingConfig(
            prefix=self.k8s_service_prefix,
            add_namespace_suffix=self.add_k8s_namespace_suffix,
            write_namespace=self.k8s_write_namespace,
            mirror_namespaces=self.mirror_k8s_namespaces,
            mirror_namespace_suffix=self.mirror_namespace_suffix,
        )


@dataclass
class AgentConfig:
    consul: ConsulConfig = field(default_factory=ConsulConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    listen: str = ":8080"
    log_level: str = "info"


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _string_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError(f"'{name}' must be a list of strings")
    return [str(v) for v in value]


def _parse_consul(section: Dict[str, Any]) -> ConsulConfig:
    token = section.get("token")
    return ConsulConfig(
        address=str(section.get("address", "127.0.0.1")),
        scheme=str(section.get("scheme", "http")),
        agent_port=int(section.get("agent_port", 8500)),
        use_host_agent=bool(section.get("use_host_agent", False)),
        token=str(token) if token else None,
        timeout=float(section.get("timeout", 5.0)),
        enable_namespaces=bool(section.get("enable_namespaces", False)),
        check_ttl=str(section.get("check_ttl", "100000h")),
    )


def _parse_kubernetes(section: Dict[str, Any]) -> KubernetesConfig:
    kubeconfig = section.get("kubeconfig")
    return KubernetesConfig(
        kubeconfig=Path(kubeconfig) if kubeconfig else None,
        label_selector=str(section.get("label_selector", INJECTED_SELECTOR) or ""),
        watch_timeout=int(section.get("watch_timeout", 300)),
        resync_period=float(section.get("resync_period", 0.0)),
    )


def _parse_sync(section: Dict[str, Any]) -> SyncConfig:
    return SyncConfig(
        k8s_source_namespace=str(section.get("k8s_source_namespace", "") or ""),
        allow_k8s_namespaces=_string_list(
            section.get("allow_k8s_namespaces"), "allow_k8s_namespaces"
        ),
        deny_k8s_namespaces=_string_list(
            section.get("deny_k8s_namespaces"), "deny_k8s_namespaces"
        ),
        k8s_service_prefix=str(section.get("k8s_service_prefix", "") or ""),
        add_k8s_namespace_suffix=bool(section.get("add_k8s_namespace_suffix", False)),
        k8s_write_namespace=str(section.get("k8s_write_namespace", "default")),
        mirror_k8s_namespaces=bool(section.get("mirror_k8s_namespaces", False)),
        mirror_namespace_suffix=str(section.get("mirror_namespace_suffix", "") or ""),
        max_retries=int(section.get("max_retries", 10)),
        workers=int(section.get("workers", 1)),
        retry_base_delay=float(section.get("retry_base_delay", 0.005)),
        retry_max_delay=float(section.get("retry_max_delay", 1000.0)),
    )


def validate_config(config: AgentConfig) -> AgentConfig:
    if config.log_level not in LOG_LEVELS:
        raise ValueError(f"unknown log level '{config.log_level}'")
    if config.sync.max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if config.sync.workers < 1:
        raise ValueError("workers must be >= 1")
    if config.consul.scheme not in ("http", "https"):
        raise ValueError(f"unsupported Consul scheme '{config.consul.scheme}'")
    parse_listen(config.listen)
    parse_selector(config.kubernetes.label_selector)
    return config


def load_config(path: Path) -> AgentConfig:
    data = yaml.safe_load(path.read_text())
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Agent configuration must be a mapping")

    return validate_config(
        AgentConfig(
            consul=_parse_consul(_section(data, "consul")),
            kubernetes=_parse_kubernetes(_section(data, "kubernetes")),
            sync=_parse_sync(_section(data, "sync")),
            listen=str(data.get("listen", ":8080")),
            log_level=str(data.get("log_level", "info")).lower(),
        )
    )


# flag destination -> (config section or None for top level, attribute)
_FLAG_TARGETS: Dict[str, Tuple[Optional[str], str]] = {
    "listen": (None, "listen"),
    "log_level": (None, "log_level"),
    "consul_address": ("consul", "address"),
    "consul_scheme": ("consul", "scheme"),
    "agent_port": ("consul", "agent_port"),
    "use_host_agent": ("consul", "use_host_agent"),
    "consul_token": ("consul", "token"),
    "enable_namespaces": ("consul", "enable_namespaces"),
    "check_ttl": ("consul", "check_ttl"),
    "kubeconfig": ("kubernetes", "kubeconfig"),
    "pod_label_selector": ("kubernetes", "label_selector"),
    "resync_period": ("kubernetes", "resync_period"),
    "k8s_source_namespace": ("sync", "k8s_source_namespace"),
    "allow_k8s_namespace": ("sync", "allow_k8s_namespaces"),
    "deny_k8s_namespace": ("sync", "deny_k8s_namespaces"),
    "k8s_service_prefix": ("sync", "k8s_service_prefix"),
    "add_k8s_namespace_suffix": ("sync", "add_k8s_namespace_suffix"),
    "k8s_write_namespace": ("sync", "k8s_write_namespace"),
    "mirror_k8s_namespaces": ("sync", "mirror_k8s_namespaces"),
    "mirror_namespace_suffix": ("sync", "mirror_namespace_suffix"),
    "max_retries": ("sync", "max_retries"),
    "workers": ("sync", "workers"),
}


def apply_overrides(config: AgentConfig, args: argparse.Namespace) -> AgentConfig:
    """Overlay every flag that was given on the command line onto ``config``."""

    for dest, (section, attr) in _FLAG_TARGETS.items():
        value = getattr(args, dest, None)
        if value is None:
            continue
        target = config if section is None else getattr(config, section)
        setattr(target, attr, value)
    config.log_level = config.log_level.lower()
    return validate_config(config)


def config_from_args(args: argparse.Namespace) -> AgentConfig:
    config_path: Optional[Path] = getattr(args, "config", None)
    config = load_config(config_path) if config_path else AgentConfig()
    return apply_overrides(config, args)


def parse_listen(value: str) -> Tuple[str, int]:
    """Split a ``[host]:port`` listen address, defaulting to all interfaces."""

    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address '{value}', expected [host]:port")
    return host.strip("[]") or "0.0.0.0", int(port)


def describe_namespaces(values: Iterable[str]) -> str:
    return ", ".join(sorted(values)) or "<none>"
