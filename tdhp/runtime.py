from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock

from .dynamic_configuration import DynamicConfiguration
from .tree import BuildWarning


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Snapshot:
    document: DynamicConfiguration
    generation: int
    built_at: str
    body: bytes  # rendered JSON, identical for identical documents
    containers: int = 0
    warnings: tuple[BuildWarning, ...] = field(default_factory=tuple)


class SnapshotCache:
    """Holds the currently published snapshot.

    Single writer (the synchronizer), any number of readers. Readers never wait
    for a rebuild: the lock is only held to swap the reference.

    State: initializing -> ready <-> rebuilding
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshot: Snapshot | None = None
        self._state = "initializing"
        self.failed_rebuilds = 0

    @property
    def state(self) -> str:
        return self._state

    def current(self) -> Snapshot | None:
        return self._snapshot

    def begin_rebuild(self) -> None:
        with self._lock:
            if self._state == "ready":
                self._state = "rebuilding"

    def publish(
        self,
        document: DynamicConfiguration,
        containers: int = 0,
        warnings: list[BuildWarning] | tuple[BuildWarning, ...] = (),
    ) -> Snapshot:
        body = document.to_json()
        with self._lock:
            prev = self._snapshot
            snap = Snapshot(
                document=document,
                generation=(prev.generation + 1) if prev else 1,
                built_at=utc_now(),
                body=body,
                containers=containers,
                warnings=tuple(warnings),
            )
            self._snapshot = snap
            self._state = "ready"
        return snap

    def abort_rebuild(self) -> None:
        """A rebuild failed; whatever was published before stays published."""
        with self._lock:
            self.failed_rebuilds += 1
            if self._snapshot is not None:
                self._state = "ready"
