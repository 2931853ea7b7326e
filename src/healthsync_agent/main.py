"""Entry point for the healthsync agent.

Syncs Kubernetes pod readiness transitions into Consul. When a probe fails
and the pod is marked unready, the transition is sent to Consul as a TTL
health check so that Consul routes traffic accordingly.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from consul_mesh import ConsulAgentPool, NamespaceFilter, NameTranslator
from healthsync import Controller, ExponentialBackoff, RateLimitingQueue
from healthsync.handlers import HealthCheckHandler
from healthsync.pods import parse_selector

from .config import (
    LOG_LEVELS,
    AgentConfig,
    KubernetesConfig,
    config_from_args,
    describe_namespaces,
    parse_listen,
)
from .readiness import ReadinessServer, create_app
from .sources import KubernetesPodSource

LOG = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync Kubernetes pod health check transitions with Consul services."
    )
    parser.add_argument("--config", type=Path, help="Path to an agent configuration file")
    parser.add_argument("--listen", help="Address to bind the readiness listener to (default :8080)")
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Log verbosity (default info)")

    consul = parser.add_argument_group("consul")
    consul.add_argument("--consul-address", help="Consul agent host (default 127.0.0.1)")
    consul.add_argument("--consul-scheme", choices=("http", "https"))
    consul.add_argument("--agent-port", type=int, help="Consul agent port to use, 8500/8501")
    consul.add_argument(
        "--use-host-agent",
        action="store_true",
        default=None,
        help="Write checks to the Consul client agent on each pod's node",
    )
    consul.add_argument("--consul-token", help="ACL token for the Consul agent API")
    consul.add_argument(
        "--enable-namespaces",
        action="store_true",
        default=None,
        help="Write checks into Consul namespaces (Consul Enterprise)",
    )
    consul.add_argument("--check-ttl", help="TTL of registered checks (default 100000h)")

    k8s = parser.add_argument_group("kubernetes")
    k8s.add_argument("--kubeconfig", type=Path, help="Path to a kubeconfig file")
    k8s.add_argument("--pod-label-selector", help="Only sync pods matching this label selector")
    k8s.add_argument(
        "--resync-period",
        type=float,
        help="Seconds between full re-lists refreshing every check (0 disables)",
    )

    sync = parser.add_argument_group("sync")
    sync.add_argument(
        "--k8s-source-namespace",
        help="The only Kubernetes namespace to sync. Overrides the allow/deny lists.",
    )
    sync.add_argument(
        "--allow-k8s-namespace",
        action="append",
        help="K8s namespaces to explicitly allow. May be specified multiple times.",
    )
    sync.add_argument(
        "--deny-k8s-namespace",
        action="append",
        help="K8s namespaces to explicitly deny. Takes precedence over allow. "
        "May be specified multiple times.",
    )
    sync.add_argument("--k8s-service-prefix", help="Prefix prepended to synced service names")
    sync.add_argument(
        "--add-k8s-namespace-suffix",
        action="store_true",
        default=None,
        help="Append the Kubernetes namespace to service names separated by a dash. "
        "Not applied when the service name annotation is provided.",
    )
    sync.add_argument("--k8s-write-namespace", help="Namespace to write to when not mirroring")
    sync.add_argument(
        "--mirror-k8s-namespaces",
        action="store_true",
        default=None,
        help="Write into a namespace named after the pod's Kubernetes namespace",
    )
    sync.add_argument("--mirror-namespace-suffix", help="Suffix appended to mirrored namespaces")
    sync.add_argument("--max-retries", type=int, help="Attempts per key before giving up (default 10)")
    sync.add_argument("--workers", type=int, help="Number of worker threads (default 1)")
    return parser


def build_core_api(config: KubernetesConfig) -> Any:
    if config.kubeconfig is not None:
        k8s_config.load_kube_config(config_file=str(config.kubeconfig))
    else:
        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException:
            k8s_config.load_kube_config()
    return k8s_client.CoreV1Api()


def build_controller(config: AgentConfig, core_api: Any, agents: ConsulAgentPool) -> Controller:
    sync = config.sync
    handler = HealthCheckHandler(
        core_api,
        agents,
        NamespaceFilter(sync.namespace_policy()),
        NameTranslator(sync.naming()),
        label_selector=parse_selector(config.kubernetes.label_selector),
        check_ttl=config.consul.check_ttl,
    )
    source = KubernetesPodSource(
        core_api,
        # A single source namespace narrows the watch itself.
        namespace=sync.k8s_source_namespace,
        label_selector=config.kubernetes.label_selector or None,
        watch_timeout=config.kubernetes.watch_timeout,
        resync_period=config.kubernetes.resync_period,
    )
    queue = RateLimitingQueue(
        ExponentialBackoff(sync.retry_base_delay, sync.retry_max_delay)
    )
    return Controller(
        source,
        handler,
        queue,
        max_retries=sync.max_retries,
        workers=sync.workers,
    )


def main(argv: list[str] | None = None, stop_event: Event | None = None) -> int:
    """Run the agent until SIGINT/SIGTERM or ``stop_event``; return the exit code."""

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except (OSError, ValueError) as exc:
        print(f"Error loading configuration: {exc}", file=sys.stderr)
        return 1
    _setup_logging(config.log_level)

    policy = config.sync.namespace_policy()
    if policy.source_namespace:
        LOG.info("syncing only Kubernetes namespace %s", policy.source_namespace)
    else:
        LOG.info(
            "K8s namespace syncing configuration: allowed=[%s] denied=[%s]",
            describe_namespaces(policy.allow),
            describe_namespaces(policy.deny),
        )

    try:
        core_api = build_core_api(config.kubernetes)
    except Exception as exc:
        LOG.error("error initializing Kubernetes client: %s", exc)
        return 1

    agents = ConsulAgentPool(
        config.consul.address,
        scheme=config.consul.scheme,
        agent_port=config.consul.agent_port,
        use_host_agent=config.consul.use_host_agent,
        token=config.consul.token,
        timeout=config.consul.timeout,
        enable_namespaces=config.consul.enable_namespaces,
    )
    controller = build_controller(config, core_api, agents)

    host, port = parse_listen(config.listen)
    readiness = ReadinessServer(create_app(controller, agents.default), host, port)
    readiness.start()

    if stop_event is None:
        stop_event = Event()

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        clean = controller.run(stop_event)
    finally:
        readiness.stop()
        agents.close()

    if not clean:
        LOG.error("healthsync agent exited unexpectedly")
        return 1
    LOG.info("healthsync agent stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
