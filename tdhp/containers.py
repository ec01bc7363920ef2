from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Protocol

from .labels import parse_bool


class StateSourceError(RuntimeError):
    """The container runtime could not be queried (unreachable, timed out...)."""


@dataclass(frozen=True)
class ContainerDescriptor:
    """One container as observed at one point in time. Replaced, never mutated."""

    id: str
    labels: Mapping[str, str] = field(default_factory=dict)
    running: bool = True
    name: str = ""
    published_ports: Mapping[int, int] = field(default_factory=dict)  # container port -> host port

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))
        object.__setattr__(self, "published_ports", MappingProxyType(dict(self.published_ports)))

    @property
    def display_name(self) -> str:
        return self.name or self.id[:12]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ContainerDescriptor":
        """Descriptor from a recorded entry. Raises ValueError on a malformed one."""
        if not isinstance(raw, dict):
            raise ValueError(f"container entry must be an object, got {type(raw).__name__}")
        return cls(
            id=str(raw["id"]),
            labels={str(k): str(v) for k, v in _mapping(raw, "labels").items()},
            running=_running(raw.get("running", True)),
            name=str(raw.get("name") or ""),
            published_ports={int(k): int(v) for k, v in _mapping(raw, "published_ports").items()},
        )


def _mapping(raw: dict[str, Any], key: str) -> dict[Any, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key!r} must be an object, got {type(value).__name__}")
    return value


def _running(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return parse_bool(value)
    raise ValueError(f"'running' must be a boolean, got {value!r}")


class StateSource(Protocol):
    """What the synchronizer needs from a container runtime."""

    @property
    def degraded(self) -> bool: ...

    def list_running(self) -> list[ContainerDescriptor]:
        """Full current set of running containers. Raises StateSourceError."""
        ...

    def watch(self, stop: threading.Event) -> Iterator[None]:
        """Yield once per observed change until ``stop`` is set."""
        ...

    def close(self) -> None: ...


class StaticStateSource:
    """In-memory source; containers are replaced wholesale with ``set_containers``."""

    def __init__(self, containers: list[ContainerDescriptor] | None = None):
        self._cond = threading.Condition()
        self._containers: tuple[ContainerDescriptor, ...] = tuple(containers or ())
        self._error: Exception | None = None
        self._changes = 0

    @property
    def degraded(self) -> bool:
        return self._error is not None

    def set_containers(self, containers: list[ContainerDescriptor], notify: bool = True) -> None:
        with self._cond:
            self._containers = tuple(containers)
        if notify:
            self.notify()

    def fail_with(self, error: Exception | None) -> None:
        """Make subsequent list_running calls raise ``error`` (None restores)."""
        with self._cond:
            self._error = error

    def notify(self) -> None:
        with self._cond:
            self._changes += 1
            self._cond.notify_all()

    def list_running(self) -> list[ContainerDescriptor]:
        with self._cond:
            if self._error is not None:
                raise StateSourceError(str(self._error)) from self._error
            return [c for c in self._containers if c.running]

    def watch(self, stop: threading.Event) -> Iterator[None]:
        # Changes made before the watcher attached are reported once, not lost.
        seen = 0
        while not stop.is_set():
            with self._cond:
                self._cond.wait_for(lambda: self._changes != seen or stop.is_set(), timeout=0.5)
                if self._changes == seen:
                    continue
                seen = self._changes
            yield None

    def close(self) -> None:
        self.notify()


class FileStateSource:
    """Recorded fixture: a JSON list of containers, re-read when the file changes.

    Each entry: {"id", "name", "labels", "running", "published_ports": {"80": 8080}}.
    """

    def __init__(self, path: str, poll_interval_s: float = 1.0):
        self.path = path
        self.poll_interval_s = poll_interval_s
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _read(self) -> list[ContainerDescriptor]:
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, list):
                raise ValueError("fixture must be a JSON list")
            out = [ContainerDescriptor.from_dict(x) for x in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            self._degraded = True
            raise StateSourceError(f"Cannot read fixture {self.path}: {type(e).__name__}: {e}") from e
        self._degraded = False
        return out

    def list_running(self) -> list[ContainerDescriptor]:
        return [c for c in self._read() if c.running]

    def _mtime(self) -> float | None:
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def watch(self, stop: threading.Event) -> Iterator[None]:
        last = self._mtime()
        while not stop.wait(self.poll_interval_s):
            now = self._mtime()
            if now != last:
                last = now
                yield None

    def close(self) -> None:
        return None
