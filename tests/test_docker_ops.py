import threading

import pytest
from docker.errors import DockerException

from tdhp.containers import StateSourceError
from tdhp.docker_ops import DockerStateSource, published_ports, to_descriptor


class FakeContainer:
    def __init__(self, cid, name, labels, ports=None, running=True):
        self.id = cid
        self.name = name
        self.labels = labels
        self.status = "running" if running else "exited"
        self.attrs = {"State": {"Running": running}, "NetworkSettings": {"Ports": ports or {}}}


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def __iter__(self):
        return iter(self._events)

    def close(self):
        self.closed = True


class FakeContainers:
    def __init__(self, client):
        self.client = client

    def list(self, filters=None, ignore_removed=False):
        self.client.list_calls.append(filters)
        if self.client.fail_list:
            raise DockerException("connection refused")
        return list(self.client.running)


class FakeClient:
    def __init__(self, running=(), streams=()):
        self.running = list(running)
        self.streams = list(streams)
        self.fail_list = False
        self.list_calls = []
        self.containers = FakeContainers(self)
        self.closed = False

    def events(self, decode=False, filters=None):
        assert decode is True
        assert filters == {"type": "container"}
        if not self.streams:
            raise DockerException("daemon unreachable")
        return self.streams.pop(0)

    def close(self):
        self.closed = True


def test_published_ports():
    ports = {
        "80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}, {"HostIp": "::", "HostPort": "8080"}],
        "443/tcp": None,
        "53/udp": [{"HostIp": "0.0.0.0", "HostPort": "5353"}],
        "9000/tcp": [{"HostIp": "0.0.0.0", "HostPort": ""}],
    }
    assert published_ports(ports) == {80: 8080}
    assert published_ports(None) == {}


def test_to_descriptor():
    c = FakeContainer("abc", "/web", {"traefik.enable": "true"}, ports={"80/tcp": [{"HostPort": "32768"}]})
    d = to_descriptor(c)
    assert d.id == "abc"
    assert d.name == "web"
    assert dict(d.labels) == {"traefik.enable": "true"}
    assert d.running is True
    assert dict(d.published_ports) == {80: 32768}


def test_list_running_and_degraded_state():
    client = FakeClient(running=[FakeContainer("a", "a", {"x": "y"})])
    source = DockerStateSource(client_factory=lambda timeout: client, timeout_s=3)

    assert [c.id for c in source.list_running()] == ["a"]
    assert client.list_calls == [{"status": "running"}]
    assert not source.degraded

    client.fail_list = True
    with pytest.raises(StateSourceError):
        source.list_running()
    assert source.degraded
    assert client.closed  # a fresh client is created for the next attempt

    client.fail_list = False
    source.list_running()
    assert not source.degraded


def test_list_uses_timeout_client():
    timeouts = []

    def factory(timeout):
        timeouts.append(timeout)
        return FakeClient()

    source = DockerStateSource(client_factory=factory, timeout_s=7)
    source.list_running()
    assert timeouts == [7]


def test_watch_yields_on_connect_and_relevant_events():
    stream = FakeStream(
        [
            {"Type": "container", "Action": "start"},
            {"Type": "container", "Action": "exec_create: sh"},
            {"Type": "container", "Action": "health_status: healthy"},
            {"Type": "container", "status": "die"},
        ]
    )
    client = FakeClient(streams=[stream])
    source = DockerStateSource(client_factory=lambda timeout: client, backoff_initial_s=0.01, backoff_max_s=0.02)
    stop = threading.Event()
    gen = source.watch(stop)

    next(gen)  # connected: resync
    next(gen)  # start
    next(gen)  # die
    assert not source.degraded
    stop.set()
    with pytest.raises(StopIteration):
        next(gen)
    assert stream.closed


def test_watch_reconnects_with_backoff_after_stream_loss():
    timeouts = []
    clients = [FakeClient(streams=[]), FakeClient(streams=[FakeStream([{"Action": "start"}])])]

    def factory(timeout):
        timeouts.append(timeout)
        return clients.pop(0) if clients else FakeClient()

    source = DockerStateSource(client_factory=factory, backoff_initial_s=0.01, backoff_max_s=0.05)
    stop = threading.Event()
    gen = source.watch(stop)

    next(gen)  # first connection fails (degraded), second succeeds and resyncs
    assert not source.degraded
    next(gen)  # start
    assert timeouts[:2] == [None, None]
    stop.set()
    gen.close()


def test_watch_marks_degraded_while_unreachable():
    source = DockerStateSource(client_factory=lambda timeout: FakeClient(), backoff_initial_s=0.01, backoff_max_s=0.01)
    stop = threading.Event()
    got = []

    def consume():
        for _ in source.watch(stop):
            got.append(1)

    t = threading.Thread(target=consume)
    t.start()
    try:
        for _ in range(100):
            if source.degraded:
                break
            stop.wait(0.01)
        assert source.degraded
        assert got == []
    finally:
        stop.set()
        t.join(timeout=2)
