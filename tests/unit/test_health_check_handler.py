from typing import Dict, List, Optional

import httpx
import pytest
from kubernetes.client import (
    ApiException,
    V1Container,
    V1ObjectMeta,
    V1Pod,
    V1PodCondition,
    V1PodSpec,
    V1PodStatus,
)

from consul_mesh.client import ConsulAgentPool, MeshRegistry
from consul_mesh.config import CheckStatus, HealthCheckRecord, NamespacePolicy, NamingConfig
from consul_mesh.namespaces import NamespaceFilter
from consul_mesh.naming import NameTranslator
from healthsync.events import Key
from healthsync.handlers.health_check import (
    CHECK_NAME,
    PASSING_OUTPUT,
    HealthCheckHandler,
    check_id_for,
)
from healthsync.pods import INJECTED_SELECTOR, SERVICE_NAME_ANNOTATION, parse_selector

KEY = Key("default", "web-1")
CHECK_ID = "default/web-1/kubernetes-health-check"


def build_pod(
    name: str = "web-1",
    namespace: str = "default",
    ready: bool = True,
    container: str = "web",
    annotations: Optional[Dict[str, str]] = None,
    injected: bool = True,
    host_ip: Optional[str] = "10.0.0.5",
    message: Optional[str] = None,
) -> V1Pod:
    labels = {"consul.hashicorp.com/connect-inject-status": "injected"} if injected else {}
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name, namespace=namespace, labels=labels, annotations=annotations
        ),
        spec=V1PodSpec(containers=[V1Container(name=container)]),
        status=V1PodStatus(
            host_ip=host_ip,
            conditions=[
                V1PodCondition(
                    type="Ready",
                    status="True" if ready else "False",
                    message=message,
                )
            ],
        ),
    )


class FakeCoreV1Api:
    def __init__(self):
        self.pods: Dict[Key, V1Pod] = {}
        self.error: Optional[Exception] = None

    def put(self, pod: V1Pod) -> None:
        self.pods[Key(pod.metadata.namespace, pod.metadata.name)] = pod

    def read_namespaced_pod(self, name, namespace):
        if self.error is not None:
            raise self.error
        try:
            return self.pods[Key(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found")


class RecordingRegistry(MeshRegistry):
    def __init__(self):
        self.store: Dict[str, HealthCheckRecord] = {}
        self.writes: List[tuple] = []

    def checks(self, namespace=None):
        return dict(self.store)

    def register_ttl_check(self, record, ttl):
        self.writes.append(("register", record.check_id, ttl))
        self.store[record.check_id] = record

    def update_ttl_check(self, record):
        self.writes.append(("update", record.check_id, record.status))
        self.store[record.check_id] = record

    def deregister_check(self, check_id, namespace=None):
        self.writes.append(("deregister", check_id, namespace))
        del self.store[check_id]

    def leader(self):
        return "10.0.0.1:8300"


def build_handler(
    core_api,
    registry,
    policy: Optional[NamespacePolicy] = None,
    naming: Optional[NamingConfig] = None,
):
    agents = ConsulAgentPool(registry_factory=lambda url: registry)
    return HealthCheckHandler(
        core_api,
        agents,
        NamespaceFilter(policy or NamespacePolicy()),
        NameTranslator(naming),
        label_selector=parse_selector(INJECTED_SELECTOR),
    )


def test_check_id_scheme():
    assert check_id_for(KEY) == CHECK_ID


def test_readiness_transitions_reuse_one_check():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(core_api, registry)

    core_api.put(build_pod(ready=True))
    handler.handle(KEY)
    core_api.put(build_pod(ready=False, message="probe timed out"))
    handler.handle(KEY)
    core_api.put(build_pod(ready=True))
    handler.handle(KEY)

    assert registry.writes == [
        ("register", CHECK_ID, "100000h"),
        ("update", CHECK_ID, CheckStatus.PASSING),
        ("update", CHECK_ID, CheckStatus.CRITICAL),
        ("update", CHECK_ID, CheckStatus.PASSING),
    ]
    record = registry.store[CHECK_ID]
    assert record.service_id == "web-1-web"
    assert record.name == CHECK_NAME
    assert record.output == PASSING_OUTPUT


def test_unready_pod_reports_critical_with_reason():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(core_api, registry)
    core_api.put(build_pod(ready=False, message="probe timed out"))

    handler.handle(KEY)

    record = registry.store[CHECK_ID]
    assert record.status is CheckStatus.CRITICAL
    assert record.output == 'Pod "default/web-1" is not ready: probe timed out'


def test_denied_namespace_is_not_written():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(
        core_api, registry, policy=NamespacePolicy.build(allow=["*"], deny=["ops"])
    )
    core_api.put(build_pod(name="api-1", namespace="ops", container="api"))

    handler.handle(Key("ops", "api-1"))

    assert registry.writes == []


def test_deleted_pod_deregisters_only_its_check():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(core_api, registry)
    other = HealthCheckRecord(
        service_id="web-1-web",
        check_id="service:web-1-web",
        status=CheckStatus.PASSING,
        name="Service check",
    )
    registry.store[other.check_id] = other
    core_api.put(build_pod())
    handler.handle(KEY)

    del core_api.pods[KEY]
    handler.handle(KEY)

    assert registry.writes[-1] == ("deregister", CHECK_ID, "default")
    assert registry.store == {other.check_id: other}


def test_deleted_pod_without_check_writes_nothing():
    registry = RecordingRegistry()
    handler = build_handler(FakeCoreV1Api(), registry)

    handler.handle(KEY)

    assert registry.writes == []


def test_foreign_check_with_same_id_is_left_alone():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    foreign = HealthCheckRecord(
        service_id="web-1-web",
        check_id=CHECK_ID,
        status=CheckStatus.WARNING,
        name="Hand written check",
    )
    registry.store[CHECK_ID] = foreign
    handler = build_handler(core_api, registry)
    core_api.put(build_pod(ready=False))

    handler.handle(KEY)
    del core_api.pods[KEY]
    handler.handle(KEY)

    assert registry.writes == []
    assert registry.store[CHECK_ID] is foreign


def test_service_annotation_overrides_naming():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(
        core_api, registry, naming=NamingConfig(prefix="k8s-", add_namespace_suffix=True)
    )
    core_api.put(build_pod(annotations={SERVICE_NAME_ANNOTATION: "billing"}))

    handler.handle(KEY)

    assert registry.store[CHECK_ID].service_id == "web-1-billing"


def test_prefix_and_suffix_apply_to_service_id():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(
        core_api, registry, naming=NamingConfig(prefix="k8s-", add_namespace_suffix=True)
    )
    core_api.put(build_pod())

    handler.handle(KEY)

    assert registry.store[CHECK_ID].service_id == "web-1-k8s-web-default"


def test_mirrored_namespace_is_used_for_the_check():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(
        core_api,
        registry,
        naming=NamingConfig(mirror_namespaces=True, mirror_namespace_suffix="-k8s"),
    )
    core_api.put(build_pod())

    handler.handle(KEY)

    assert registry.store[CHECK_ID].namespace == "default-k8s"


def test_pod_outside_selector_is_treated_as_gone():
    core_api = FakeCoreV1Api()
    registry = RecordingRegistry()
    handler = build_handler(core_api, registry)
    core_api.put(build_pod())
    handler.handle(KEY)

    core_api.put(build_pod(injected=False))
    handler.handle(KEY)

    assert registry.writes[-1][0] == "deregister"
    assert CHECK_ID not in registry.store


def test_kubernetes_errors_propagate():
    core_api = FakeCoreV1Api()
    core_api.error = ApiException(status=500, reason="Internal Server Error")
    handler = build_handler(core_api, RecordingRegistry())

    with pytest.raises(ApiException):
        handler.handle(KEY)


def test_registry_errors_propagate():
    class UnreachableRegistry(RecordingRegistry):
        def checks(self, namespace=None):
            raise httpx.ConnectError("connection refused")

    core_api = FakeCoreV1Api()
    core_api.put(build_pod())
    handler = build_handler(core_api, UnreachableRegistry())

    with pytest.raises(httpx.ConnectError):
        handler.handle(KEY)


def test_host_agent_routing_follows_the_pod():
    created: Dict[str, RecordingRegistry] = {}

    def factory(url):
        created[url] = RecordingRegistry()
        return created[url]

    core_api = FakeCoreV1Api()
    agents = ConsulAgentPool(use_host_agent=True, registry_factory=factory)
    handler = HealthCheckHandler(
        core_api,
        agents,
        NamespaceFilter(NamespacePolicy()),
        NameTranslator(),
    )
    core_api.put(build_pod(host_ip="10.0.0.7"))

    handler.handle(KEY)
    del core_api.pods[KEY]
    handler.handle(KEY)

    assert list(created) == ["http://10.0.0.7:8500"]
    writes = created["http://10.0.0.7:8500"].writes
    assert [w[0] for w in writes] == ["register", "update", "deregister"]


def test_deleted_pod_with_existing_check_only_deregisters():
    registry = RecordingRegistry()
    registry.store[CHECK_ID] = HealthCheckRecord(
        service_id="web-1-web",
        check_id=CHECK_ID,
        status=CheckStatus.PASSING,
        name=CHECK_NAME,
    )
    handler = build_handler(FakeCoreV1Api(), registry)

    handler.handle(KEY)

    assert registry.writes == [("deregister", CHECK_ID, "default")]
    assert registry.store == {}
