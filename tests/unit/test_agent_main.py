from threading import Event

import pytest
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from healthsync.source import EventSource
from healthsync_agent import main as agent_main


class FakeSource(EventSource):
    instances: list = []

    def __init__(self, core_api, **kwargs):
        self.core_api = core_api
        self.kwargs = kwargs
        self.start_error = None
        self.fail_with = None
        self.stopped = False
        FakeSource.instances.append(self)

    def start(self, emit, on_failure):
        if self.start_error is not None:
            raise self.start_error
        if self.fail_with is not None:
            on_failure(self.fail_with)

    def stop(self):
        self.stopped = True


class StubReadinessServer:
    instances: list = []

    def __init__(self, app, host, port):
        self.address = (host, port)
        self.started = False
        self.stopped = False
        StubReadinessServer.instances.append(self)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


@pytest.fixture
def agent(monkeypatch):
    FakeSource.instances = []
    StubReadinessServer.instances = []
    monkeypatch.setattr(agent_main, "build_core_api", lambda config: object())
    monkeypatch.setattr(agent_main, "KubernetesPodSource", FakeSource)
    monkeypatch.setattr(agent_main, "ReadinessServer", StubReadinessServer)
    monkeypatch.setattr(agent_main.signal, "signal", lambda signum, handler: None)
    return monkeypatch


def test_graceful_stop_exits_zero(agent):
    stop_event = Event()
    stop_event.set()

    assert agent_main.main(["--listen", ":0"], stop_event=stop_event) == 0

    source = FakeSource.instances[0]
    assert source.stopped
    server = StubReadinessServer.instances[0]
    assert server.address == ("0.0.0.0", 0)
    assert server.started and server.stopped


def test_source_start_failure_exits_one(agent):
    def failing_source(core_api, **kwargs):
        source = FakeSource(core_api, **kwargs)
        source.start_error = ApiException(status=403, reason="Forbidden")
        return source

    agent.setattr(agent_main, "KubernetesPodSource", failing_source)

    assert agent_main.main([], stop_event=Event()) == 1
    assert StubReadinessServer.instances[0].stopped


def test_source_failure_while_running_exits_one(agent):
    def failing_source(core_api, **kwargs):
        source = FakeSource(core_api, **kwargs)
        source.fail_with = ApiException(status=401, reason="Unauthorized")
        return source

    agent.setattr(agent_main, "KubernetesPodSource", failing_source)

    assert agent_main.main([], stop_event=Event()) == 1
    assert FakeSource.instances[0].stopped


def test_kubernetes_client_error_exits_one(agent):
    def broken_client(config):
        raise ConfigException("no kubeconfig found")

    agent.setattr(agent_main, "build_core_api", broken_client)

    assert agent_main.main([]) == 1
    assert StubReadinessServer.instances == []


def test_source_namespace_narrows_the_watch(agent):
    stop_event = Event()
    stop_event.set()

    agent_main.main(
        ["--k8s-source-namespace", "shop", "--pod-label-selector", "app=web"],
        stop_event=stop_event,
    )

    kwargs = FakeSource.instances[0].kwargs
    assert kwargs["namespace"] == "shop"
    assert kwargs["label_selector"] == "app=web"
