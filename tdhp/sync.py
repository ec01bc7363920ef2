from __future__ import annotations

import concurrent.futures
from threading import Event, Lock, Thread

from . import db
from .containers import ContainerDescriptor, StateSource, StateSourceError
from .dynamic_configuration import DynamicConfiguration, build_dynamic_configuration
from .runtime import Snapshot, SnapshotCache
from .settings import settings
from .tree import BuildWarning


class Synchronizer:
    """Keeps the snapshot cache in line with the containers reported by a source.

    Two background threads: one forwards change notifications from the source,
    the other rebuilds. Notifications arriving during a rebuild collapse into a
    single follow-up rebuild.
    """

    def __init__(
        self,
        source: StateSource,
        cache: SnapshotCache,
        base_url: str,
        prefix: str | None = None,
        exposed_by_default: bool | None = None,
        source_timeout_s: float | None = None,
        resync_interval_s: float | None = None,
    ):
        self.source = source
        self.cache = cache
        self.base_url = base_url
        self.prefix = prefix or settings.label_prefix
        self.exposed_by_default = settings.exposed_by_default if exposed_by_default is None else exposed_by_default
        self.source_timeout_s = settings.source_timeout_s if source_timeout_s is None else source_timeout_s
        self.resync_interval_s = settings.resync_interval_s if resync_interval_s is None else resync_interval_s
        self._stop = Event()
        self._trigger = Event()
        self._rebuild_lock = Lock()
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="tdhp-source")
        self._threads: list[Thread] = []
        self._reported: set[BuildWarning] = set()

    def start(self) -> None:
        """Build the first snapshot synchronously, then keep it current in the background."""
        if self._threads:
            return
        try:
            self.rebuild()
        except Exception as e:
            self.cache.abort_rebuild()
            db.log_event("ERROR", f"Initial build failed: {type(e).__name__}: {e}")
        if self.cache.current() is None:
            # Never leave readers without a document.
            self.cache.publish(DynamicConfiguration())
            db.log_event("WARN", "Initial build failed; serving an empty configuration until the source recovers")
        self._threads = [
            Thread(target=self._watch_loop, name="tdhp-watch", daemon=True),
            Thread(target=self._rebuild_loop, name="tdhp-rebuild", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop.set()
        self._trigger.set()
        self.source.close()
        for t in self._threads:
            t.join(timeout=5)
        self._pool.shutdown(wait=False)

    def request_rebuild(self) -> None:
        self._trigger.set()

    def _watch_loop(self) -> None:
        db.log_event("INFO", "Watching container lifecycle events")
        while not self._stop.is_set():
            try:
                for _ in self.source.watch(self._stop):
                    self._trigger.set()
            except Exception as e:
                db.log_event("ERROR", f"Event watch failed: {type(e).__name__}: {e}")
                self._stop.wait(1)

    def _rebuild_loop(self) -> None:
        timeout = self.resync_interval_s if self.resync_interval_s > 0 else None
        while not self._stop.is_set():
            self._trigger.wait(timeout)
            if self._stop.is_set():
                break
            self._trigger.clear()
            try:
                self.rebuild()
            except Exception as e:
                self.cache.abort_rebuild()
                db.log_event("ERROR", f"Rebuild failed: {type(e).__name__}: {e}")

    def _list_running(self) -> list[ContainerDescriptor]:
        future = self._pool.submit(self.source.list_running)
        try:
            return future.result(timeout=self.source_timeout_s)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise StateSourceError(f"Container source did not answer within {self.source_timeout_s}s") from e

    def rebuild(self) -> Snapshot | None:
        """Fetch, build and publish once. Returns None when the source failed."""
        with self._rebuild_lock:
            self.cache.begin_rebuild()
            try:
                containers = self._list_running()
            except StateSourceError as e:
                self.cache.abort_rebuild()
                db.log_event("WARN", f"Rebuild skipped, keeping the previous configuration: {e}")
                return None

            document, warnings = build_dynamic_configuration(
                containers,
                self.base_url,
                prefix=self.prefix,
                exposed_by_default=self.exposed_by_default,
            )
            self._report(warnings)
            prev = self.cache.current()
            snap = self.cache.publish(document, containers=len(containers), warnings=warnings)
            if prev is None or prev.body != snap.body:
                db.log_event(
                    "INFO",
                    f"Published configuration generation {snap.generation}: "
                    f"{len(document.http.routers)} routers, {len(document.http.services)} services, "
                    f"{len(document.http.middlewares)} middlewares from {len(containers)} containers",
                )
            return snap

    def _report(self, warnings: list[BuildWarning]) -> None:
        current = set(warnings)
        for w in sorted(current - self._reported):
            db.log_event("WARN", w.message + f" ({w.key})", container=w.container_id)
        self._reported = current
