"""Merge per-container label trees into one dynamic configuration document.

``build_dynamic_configuration`` is a pure function of the container set: the
containers are visited in container-id order and the first definition of a
router/service/middleware name wins, so the result never depends on the order
in which containers were observed.
"""
from __future__ import annotations

import json
import re
from typing import Any, Iterable
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .containers import ContainerDescriptor
from .labels import parse_bool, parse_port
from .tree import BuildWarning, ConfigNode, Leaf, ListNode, ObjectNode, build_container_tree, child, to_data

HTTP_COLLECTIONS = ("routers", "services", "middlewares")
TLS_COLLECTIONS = ("options", "stores")
# Service kinds that route to other services rather than to servers.
COMPOSITE_SERVICES = ("weighted", "mirroring", "failover")


class Router(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    rule: str | None = None
    service: str | None = None
    priority: int | None = None
    entrypoints: list[str] | None = None
    middlewares: list[str] | None = None
    tls: dict[str, Any] | None = None

    @field_validator("entrypoints", "middlewares", mode="before")
    @classmethod
    def split_comma_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return v

    @field_validator("tls", mode="before")
    @classmethod
    def tls_flag(cls, v: Any) -> Any:
        # `tls=true` enables TLS with default settings; `tls=false` leaves it off.
        if isinstance(v, str):
            return {} if parse_bool(v) else None
        return v


class Server(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    url: str


class LoadBalancer(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    server: dict[str, Any] | None = None
    servers: list[Server] | None = None


class Service(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    loadbalancer: LoadBalancer | None = None


class Middleware(BaseModel):
    # Middleware kinds are open-ended; the structure is passed through as parsed.
    model_config = ConfigDict(extra="allow", frozen=True)


class HttpConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    routers: dict[str, Router] = Field(default_factory=dict)
    services: dict[str, Service] = Field(default_factory=dict)
    middlewares: dict[str, Middleware] = Field(default_factory=dict)


class DynamicConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    http: HttpConfiguration = Field(default_factory=HttpConfiguration)
    tls: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


_MODELS: dict[str, type[BaseModel]] = {"routers": Router, "services": Service, "middlewares": Middleware}

_SERVICE_NAME_RE = re.compile(r"[^A-Za-z0-9\-]")


def default_service_name(container: ContainerDescriptor) -> str:
    return _SERVICE_NAME_RE.sub("-", container.display_name.lstrip("/"))


def server_url(base_url: str, port: int | None = None, scheme: str | None = None) -> str:
    """Base URL with the port (and optionally the scheme) replaced."""
    if port is None and scheme is None:
        return base_url
    parts = urlsplit(base_url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.username:
        auth = parts.username + (f":{parts.password}" if parts.password else "")
        host = f"{auth}@{host}"
    port = port if port is not None else parts.port
    netloc = f"{host}:{port}" if port is not None else host
    return urlunsplit((scheme or parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class _Merge:
    """Accumulates the document while containers are visited in id order."""

    def __init__(self, base_url: str, prefix: str, exposed_by_default: bool):
        self.base_url = base_url
        self.prefix = prefix
        self.exposed_by_default = exposed_by_default
        self.collections: dict[str, dict[str, BaseModel]] = {name: {} for name in HTTP_COLLECTIONS}
        self.owners: dict[tuple[str, str], str] = {}
        self.tls: dict[str, dict[str, Any]] = {name: {} for name in TLS_COLLECTIONS}
        self.certificates: list[Any] = []
        self.warnings: list[BuildWarning] = []

    def warn(self, container: ContainerDescriptor, key: str, message: str) -> None:
        self.warnings.append(BuildWarning(container.id, key, message))

    def _enabled(self, container: ContainerDescriptor, tree: ObjectNode) -> bool:
        flag = child(tree, "enable")
        if flag is None:
            return self.exposed_by_default
        if not isinstance(flag, Leaf):
            self.warn(container, f"{self.prefix}.enable", "expected a plain value; using default")
            return self.exposed_by_default
        try:
            return parse_bool(flag.value)
        except ValueError:
            self.warn(container, f"{self.prefix}.enable", f"not a boolean ({flag.value!r}); using default")
            return self.exposed_by_default

    def _claim(self, container: ContainerDescriptor, kind: str, name: str) -> bool:
        owner = self.owners.get((kind, name))
        if owner is None:
            self.owners[(kind, name)] = container.id
            return True
        self.warn(
            container,
            f"{self.prefix}.{kind}.{name}",
            f"name already defined by container {owner[:12]}; definition dropped",
        )
        return False

    def add_container(self, container: ContainerDescriptor) -> None:
        tree, warnings = build_container_tree(container, prefix=self.prefix)
        self.warnings.extend(warnings)
        if not self._enabled(container, tree):
            return

        entries: dict[str, dict[str, Any]] = {}
        for name in HTTP_COLLECTIONS:
            node = child(tree, "http", name)
            entries[name] = self._named_entries(container, f"http.{name}", node)

        if entries["routers"] and not entries["services"]:
            entries["services"][default_service_name(container)] = {}

        routers = entries["routers"]
        for rname, data in list(routers.items()):
            if isinstance(data, dict) and "service" not in data:
                if len(entries["services"]) == 1:
                    data["service"] = next(iter(entries["services"]))
                else:
                    self.warn(
                        container,
                        f"{self.prefix}.http.routers.{rname}",
                        "no service given and the container does not define exactly one; router dropped",
                    )
                    del routers[rname]

        entries["services"] = {
            sname: self._with_default_target(container, sname, data) if isinstance(data, dict) else data
            for sname, data in entries["services"].items()
        }

        for kind in HTTP_COLLECTIONS:
            for name, data in entries[kind].items():
                model = self._project(container, kind, name, data)
                if model is not None and self._claim(container, f"http.{kind}", name):
                    self.collections[kind][name] = model

        self._add_tls(container, tree)

    def _named_entries(self, container: ContainerDescriptor, where: str, node: ConfigNode | None) -> dict[str, Any]:
        if node is None:
            return {}
        if not isinstance(node, ObjectNode):
            self.warn(container, f"{self.prefix}.{where}", "expected named entries; ignored")
            return {}
        return {name: to_data(sub) for name, sub in node.children.items()}

    def _project(self, container: ContainerDescriptor, kind: str, name: str, data: Any) -> BaseModel | None:
        key = f"{self.prefix}.http.{kind}.{name}"
        if not isinstance(data, dict):
            self.warn(container, key, "expected an object; ignored")
            return None
        model = _MODELS[kind]
        try:
            return model.model_validate(data)
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            for field in sorted(bad):
                self.warn(container, f"{key}.{field}", "invalid value; field dropped")
            try:
                return model.model_validate({k: v for k, v in data.items() if k not in bad})
            except ValidationError:
                self.warn(container, key, "invalid definition; ignored")
                return None

    def _with_default_target(self, container: ContainerDescriptor, name: str, data: dict[str, Any]) -> dict[str, Any]:
        key = f"{self.prefix}.http.services.{name}.loadbalancer"
        if "loadbalancer" not in data and any(kind in data for kind in COMPOSITE_SERVICES):
            return data
        lb = data.get("loadbalancer", {})
        if not isinstance(lb, dict):
            return data
        server = lb.get("server", {})
        if not isinstance(server, dict):
            server = {}
        if "servers" in lb or "url" in server:
            return data

        port: int | None = None
        raw_port = server.get("port")
        if isinstance(raw_port, str):
            try:
                port = parse_port(raw_port)
            except ValueError:
                self.warn(container, f"{key}.server.port", f"invalid port {raw_port!r}; ignored for the server URL")
        if port is not None:
            port = container.published_ports.get(port, port)
        elif container.published_ports:
            port = container.published_ports[min(container.published_ports)]

        scheme = server.get("scheme") if isinstance(server.get("scheme"), str) else None
        url = server_url(self.base_url, port=port, scheme=scheme)
        return {**data, "loadbalancer": {**lb, "servers": [{"url": url}]}}

    def _add_tls(self, container: ContainerDescriptor, tree: ObjectNode) -> None:
        for kind in TLS_COLLECTIONS:
            for name, data in self._named_entries(container, f"tls.{kind}", child(tree, "tls", kind)).items():
                if self._claim(container, f"tls.{kind}", name):
                    self.tls[kind][name] = data
        certs = child(tree, "tls", "certificates")
        if isinstance(certs, ListNode):
            self.certificates.extend(to_data(certs))
        elif certs is not None:
            self.warn(container, f"{self.prefix}.tls.certificates", "expected an indexed list; ignored")

    def result(self) -> DynamicConfiguration:
        tls: dict[str, Any] = {kind: entries for kind, entries in self.tls.items() if entries}
        if self.certificates:
            tls["certificates"] = self.certificates
        return DynamicConfiguration(
            http=HttpConfiguration(
                routers=self.collections["routers"],
                services=self.collections["services"],
                middlewares=self.collections["middlewares"],
            ),
            tls=tls,
        )


def build_dynamic_configuration(
    containers: Iterable[ContainerDescriptor],
    base_url: str,
    prefix: str = "traefik",
    exposed_by_default: bool = True,
) -> tuple[DynamicConfiguration, list[BuildWarning]]:
    """Build the document for a set of containers.

    Never raises for label content: malformed labels, conflicting names and bad
    values become warnings and the rest of the document is still produced.
    """
    merge = _Merge(base_url, prefix, exposed_by_default)
    for container in sorted((c for c in containers if c.running), key=lambda c: c.id):
        merge.add_container(container)
    return merge.result(), merge.warnings
