import json

import pytest
from fastapi.testclient import TestClient

from tdhp.api import create_app
from tdhp.containers import StaticStateSource
from tdhp.settings import ConfigError, Settings

from .conftest import BASE_URL

WEB_LABELS = {
    "traefik.http.routers.web.rule": "Host(`x`)",
    "traefik.http.routers.web.service": "web-svc",
    "traefik.http.services.web-svc.loadbalancer.server.port": "80",
}


def _settings(**kw):
    kw.setdefault("base_url", BASE_URL)
    kw.setdefault("resync_interval_s", 0)
    return Settings(**kw)


def test_health_check():
    with TestClient(create_app(StaticStateSource(), _settings())) as client:
        r = client.get("/")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}


def test_empty_document_when_no_containers():
    with TestClient(create_app(StaticStateSource(), _settings())) as client:
        r = client.get("/dynamic_configuration")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("application/json")
        assert r.json() == {"http": {"routers": {}, "services": {}, "middlewares": {}}, "tls": {}}
        assert r.headers["X-Config-Generation"] == "1"


def test_serves_document_from_labels(make_container):
    source = StaticStateSource([make_container("a", WEB_LABELS, ports={80: 8080})])
    with TestClient(create_app(source, _settings())) as client:
        body = client.get("/dynamic_configuration").json()
        assert body["http"]["routers"]["web"] == {"rule": "Host(`x`)", "service": "web-svc"}
        assert body["http"]["services"]["web-svc"]["loadbalancer"]["servers"] == [{"url": "http://192.168.1.100:8080"}]


def test_same_state_gives_identical_bytes(make_container):
    source = StaticStateSource([make_container("a", WEB_LABELS)])
    with TestClient(create_app(source, _settings())) as client:
        first = client.get("/dynamic_configuration")
        client.app.state.syncer.rebuild()
        second = client.get("/dynamic_configuration")
        assert first.content == second.content
        assert int(second.headers["X-Config-Generation"]) > int(first.headers["X-Config-Generation"])


def test_label_problems_never_surface_as_errors(make_container):
    labels = {**WEB_LABELS, "traefik.http.routers..rule": "x", "traefik.a[": "y"}
    source = StaticStateSource([make_container("a", labels)])
    with TestClient(create_app(source, _settings())) as client:
        r = client.get("/dynamic_configuration")
        assert r.status_code == 200
        assert "web" in json.loads(r.content)["http"]["routers"]

        status = client.get("/status").json()
        assert status["state"] == "ready"
        assert status["routers"] == 1
        assert len(status["warnings"]) == 2


def test_source_outage_keeps_serving_last_snapshot(make_container):
    source = StaticStateSource([make_container("a", WEB_LABELS)])
    with TestClient(create_app(source, _settings())) as client:
        before = client.get("/dynamic_configuration").content
        source.fail_with(ConnectionError("daemon gone"))
        assert client.app.state.syncer.rebuild() is None
        after = client.get("/dynamic_configuration").content
        assert after == before

        status = client.get("/status").json()
        assert status["source_degraded"] is True
        assert status["failed_rebuilds"] == 1


def test_events_endpoint(make_container):
    with TestClient(create_app(StaticStateSource(), _settings())) as client:
        r = client.get("/events", params={"limit": 5})
        assert r.status_code == 200
        rows = r.json()
        assert 1 <= len(rows) <= 5
        assert {"id", "ts", "level", "message"} <= set(rows[0])


def test_missing_base_url_is_fatal():
    app = create_app(StaticStateSource(), _settings(base_url=None))
    with pytest.raises(ConfigError):
        with TestClient(app):
            pass


@pytest.mark.parametrize("bad", ["", "192.168.1.100", "ftp://host", "http://"])
def test_invalid_base_url_is_fatal(bad):
    app = create_app(StaticStateSource(), _settings(base_url=bad))
    with pytest.raises(ConfigError):
        with TestClient(app):
            pass
