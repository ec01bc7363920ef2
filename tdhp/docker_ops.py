from __future__ import annotations

import threading
from typing import Any, Callable, Iterator

import docker
import requests
from docker.errors import DockerException

from . import db
from .containers import ContainerDescriptor, StateSourceError
from .settings import settings

# Container lifecycle actions that can change what we publish.
WATCHED_ACTIONS = frozenset({"start", "die", "destroy", "pause", "unpause", "rename", "update"})

# Transport failures surface from docker-py as requests exceptions, not only DockerException.
_RUNTIME_ERRORS = (DockerException, requests.exceptions.RequestException, OSError)


def _client(timeout: int | None) -> docker.DockerClient:
    if settings.docker_host:
        return docker.DockerClient(base_url=settings.docker_host, timeout=timeout)
    return docker.from_env(timeout=timeout)


def published_ports(ports: dict[str, Any] | None) -> dict[int, int]:
    """Map container TCP ports to the host ports they are published on.

    ``ports`` is docker's NetworkSettings.Ports, e.g.
    {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}], "443/tcp": None}.
    """
    out: dict[int, int] = {}
    for key, bindings in (ports or {}).items():
        port, _, proto = key.partition("/")
        if proto not in ("", "tcp") or not bindings:
            continue
        for b in bindings:
            host_port = (b or {}).get("HostPort")
            if host_port:
                try:
                    out[int(port)] = int(host_port)
                except ValueError:
                    continue
                break
    return out


def to_descriptor(container: Any) -> ContainerDescriptor:
    attrs = container.attrs or {}
    state = attrs.get("State") or {}
    running = state.get("Running") if isinstance(state, dict) else None
    return ContainerDescriptor(
        id=container.id,
        name=(container.name or "").lstrip("/"),
        labels=container.labels or {},
        running=bool(running) if running is not None else container.status == "running",
        published_ports=published_ports((attrs.get("NetworkSettings") or {}).get("Ports")),
    )


class DockerStateSource:
    """Running containers and lifecycle events from the local Docker daemon.

    A lost connection puts the source into a degraded state; ``watch`` then
    reconnects with exponential backoff and emits nothing until it is back.
    """

    def __init__(
        self,
        client_factory: Callable[[int | None], Any] = _client,
        timeout_s: int | None = None,
        backoff_initial_s: float | None = None,
        backoff_max_s: float | None = None,
    ):
        self._client_factory = client_factory
        self.timeout_s = timeout_s if timeout_s is not None else settings.docker_timeout_s
        self.backoff_initial_s = backoff_initial_s if backoff_initial_s is not None else settings.backoff_initial_s
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else settings.backoff_max_s
        self._lock = threading.Lock()
        self._api: Any = None
        self._stream: Any = None
        self._events_api: Any = None
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _set_degraded(self, degraded: bool, reason: str = "") -> None:
        if degraded == self._degraded:
            return
        self._degraded = degraded
        if degraded:
            db.log_event("ERROR", f"Lost connection to Docker: {reason}")
        else:
            db.log_event("INFO", "Connection to Docker restored")

    def _api_client(self) -> Any:
        with self._lock:
            if self._api is None:
                self._api = self._client_factory(self.timeout_s)
            return self._api

    def _drop_api_client(self) -> None:
        with self._lock:
            api, self._api = self._api, None
        if api is not None:
            try:
                api.close()
            except _RUNTIME_ERRORS:
                pass

    def list_running(self) -> list[ContainerDescriptor]:
        try:
            containers = self._api_client().containers.list(filters={"status": "running"}, ignore_removed=True)
            out = [to_descriptor(c) for c in containers]
        except _RUNTIME_ERRORS as e:
            self._drop_api_client()
            self._set_degraded(True, f"{type(e).__name__}: {e}")
            raise StateSourceError(f"Cannot list containers: {type(e).__name__}: {e}") from e
        self._set_degraded(False)
        return out

    def watch(self, stop: threading.Event) -> Iterator[None]:
        delay = self.backoff_initial_s
        while not stop.is_set():
            try:
                # The event stream idles for long periods, so it gets a client without a read timeout.
                self._events_api = self._client_factory(None)
                self._stream = self._events_api.events(decode=True, filters={"type": "container"})
                self._set_degraded(False)
                delay = self.backoff_initial_s
                # Anything may have changed while we were not listening.
                yield None
                for event in self._stream:
                    if stop.is_set():
                        break
                    action = (event.get("Action") or event.get("status") or "").split(":")[0]
                    if action in WATCHED_ACTIONS:
                        yield None
                else:
                    if not stop.is_set():
                        raise StateSourceError("Docker event stream ended")
            except (StateSourceError, *_RUNTIME_ERRORS) as e:
                if stop.is_set():
                    break
                self._set_degraded(True, f"{type(e).__name__}: {e}")
                if stop.wait(delay):
                    break
                delay = min(delay * 2, self.backoff_max_s)
            finally:
                self._close_stream()

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except _RUNTIME_ERRORS:
                pass
        api, self._events_api = self._events_api, None
        if api is not None:
            try:
                api.close()
            except _RUNTIME_ERRORS:
                pass

    def close(self) -> None:
        self._close_stream()
        self._drop_api_client()
