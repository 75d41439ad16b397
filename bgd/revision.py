from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping

from .graph import ContainerDAG, ContainerNode, Edge, InvalidRevision, build
from .runtime import utc_now
from .settings import Settings, settings as default_settings
from .sidecars import FeatureFlags, Grant, SidecarSet, TelemetryDocuments, materialize

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise InvalidRevision(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so health probes stay on the task's own endpoint.
    if not path.startswith("/"):
        raise InvalidRevision("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise InvalidRevision("health_path must be a simple absolute path (no scheme, no '..').")


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int = 5432
    name: str = "appdb"
    credentials_secret: str | None = None
    ssl: bool = False


@dataclass(frozen=True)
class CacheConfig:
    endpoint: str
    port: int = 6379
    tls: bool = True


@dataclass(frozen=True)
class DataLayerConfig:
    """Externally provisioned data-layer values forwarded to the app container as-is."""

    database: DatabaseConfig | None = None
    cache: CacheConfig | None = None

    def environment(self) -> list[tuple[str, str]]:
        env: list[tuple[str, str]] = []
        if self.database:
            db = self.database
            env += [
                ("DB_HOST", db.host),
                ("DB_PORT", str(db.port)),
                ("DB_NAME", db.name),
                ("DB_SSL", "true" if db.ssl else "false"),
            ]
        if self.cache:
            env += [
                ("VALKEY_HOST", self.cache.endpoint),
                ("VALKEY_PORT", str(self.cache.port)),
                ("VALKEY_TLS", "true" if self.cache.tls else "false"),
            ]
        return env

    def secrets(self) -> list[tuple[str, str]]:
        if not self.database or not self.database.credentials_secret:
            return []
        ref = self.database.credentials_secret
        return [("DB_USERNAME", f"{ref}:username"), ("DB_PASSWORD", f"{ref}:password")]


def _merge_pairs(*groups: Iterable[tuple[str, str]]) -> tuple[tuple[str, str], ...]:
    # Later groups override earlier keys; first-seen key order is kept.
    merged: dict[str, str] = {}
    for g in groups:
        for k, v in g:
            merged[k] = v
    return tuple(merged.items())


@dataclass(frozen=True)
class Revision:
    """Immutable deployable unit: the container graph plus everything needed to run it."""

    id: str
    service: str
    graph: ContainerDAG
    app_container: str
    port: int
    health_path: str
    flags: FeatureFlags
    sidecar_set: SidecarSet
    grants: tuple[Grant, ...]
    volumes: tuple[str, ...]
    cpu: int
    memory_mib: int
    desired_count: int
    created_at: str

    @property
    def app(self) -> ContainerNode:
        return self.graph.node(self.app_container)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "graph": self.graph.to_dict(),
            "app_container": self.app_container,
            "port": self.port,
            "health_path": self.health_path,
            "flags": {
                "enable_log_shipping": self.flags.enable_log_shipping,
                "enable_metrics_collection": self.flags.enable_metrics_collection,
                "enable_tracing": self.flags.enable_tracing,
            },
            "sidecar_set": self.sidecar_set.value,
            "grants": [{"principal": g.principal, "action": g.action, "resource": g.resource} for g in self.grants],
            "volumes": list(self.volumes),
            "cpu": self.cpu,
            "memory_mib": self.memory_mib,
            "desired_count": self.desired_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Revision":
        return cls(
            id=data["id"],
            service=data["service"],
            graph=ContainerDAG.from_dict(data["graph"]),
            app_container=data["app_container"],
            port=int(data["port"]),
            health_path=data["health_path"],
            flags=FeatureFlags(**data["flags"]),
            sidecar_set=SidecarSet(data["sidecar_set"]),
            grants=tuple(Grant(**g) for g in data.get("grants", [])),
            volumes=tuple(data.get("volumes", [])),
            cpu=int(data["cpu"]),
            memory_mib=int(data["memory_mib"]),
            desired_count=int(data["desired_count"]),
            created_at=data["created_at"],
        )


def build_revision(
    service: str,
    containers: Iterable[ContainerNode],
    app_container: str,
    port: int,
    health_path: str = "/health",
    flags: FeatureFlags = FeatureFlags(),
    documents: TelemetryDocuments = TelemetryDocuments(),
    data_layer: DataLayerConfig = DataLayerConfig(),
    edges: Iterable[Edge] = (),
    cpu: int | None = None,
    memory_mib: int | None = None,
    desired_count: int | None = None,
    revision_id: str | None = None,
    cfg: Settings = default_settings,
) -> Revision:
    """Apply the sidecar diff and injected configuration, then validate the resulting graph.

    Raises InvalidRevision (or CycleDetected) for malformed input; nothing is
    provisioned until this succeeds.
    """
    validate_service_name(service)
    validate_health_path(health_path)
    if not 1 <= int(port) <= 65535:
        raise InvalidRevision("port must be between 1 and 65535.")

    containers = list(containers)
    names = {c.name for c in containers}
    if app_container not in names:
        raise InvalidRevision(f"Application container '{app_container}' is not part of the revision.")

    diff = materialize(flags, documents, app_name=app_container, service_name=service, cfg=cfg)
    clash = names & {n.name for n in diff.nodes}
    if clash:
        raise InvalidRevision(f"Container names reserved for sidecars: {', '.join(sorted(clash))}.")

    nodes: list[ContainerNode] = []
    for c in containers:
        if c.name == app_container:
            if not c.essential:
                raise InvalidRevision("The application container must be essential.")
            c = replace(
                c,
                port=int(port),
                environment=_merge_pairs(c.environment, data_layer.environment(), diff.app_environment),
                secrets=_merge_pairs(c.secrets, data_layer.secrets()),
                mount_points=c.mount_points + tuple(m for m in diff.app_mount_points if m not in c.mount_points),
            )
        nodes.append(c)

    graph = build(nodes + list(diff.nodes), list(edges) + list(diff.edges))

    volumes = sorted({m.source_volume for n in graph.nodes for m in n.mount_points} | set(diff.volumes))
    return Revision(
        id=revision_id or f"rev-{secrets.token_hex(6)}",
        service=service,
        graph=graph,
        app_container=app_container,
        port=int(port),
        health_path=health_path,
        flags=flags,
        sidecar_set=diff.sidecar_set,
        grants=diff.grants,
        volumes=tuple(volumes),
        cpu=int(cpu if cpu is not None else cfg.task_cpu),
        memory_mib=int(memory_mib if memory_mib is not None else cfg.task_memory_mib),
        desired_count=max(1, int(desired_count if desired_count is not None else cfg.desired_count)),
        created_at=utc_now(),
    )
