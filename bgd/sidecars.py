"""Optional sidecar containers derived from a revision's feature flags.

``materialize`` is a pure function: the same flags and documents always give
the same :class:`GraphDiff`. The diff is applied once, while the revision is
built (see :mod:`bgd.revision`).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .graph import Condition, ContainerNode, Dependency, Edge, InvalidRevision, MountPoint
from .settings import Settings, settings as default_settings

LOG_ROUTER = "log-router"
COLLECTOR = "otel-collector"
INSTRUMENTATION_INIT = "otel-init"
INSTRUMENTATION_VOLUME = "otel-auto-instrumentation"

TRACING_ENV_KEYS = ("OTEL_TRACES_SAMPLER", "OTEL_TRACES_SAMPLER_ARG", "OTEL_PROPAGATORS")


@dataclass(frozen=True)
class FeatureFlags:
    enable_log_shipping: bool = False
    enable_metrics_collection: bool = False
    enable_tracing: bool = False


class SidecarSet(str, Enum):
    NONE = "NONE"
    LOG_ONLY = "LOG_ONLY"
    LOG_AND_METRICS = "LOG_AND_METRICS"
    LOG_AND_TRACING = "LOG_AND_TRACING"
    LOG_METRICS_AND_TRACING = "LOG_METRICS_AND_TRACING"

    @classmethod
    def from_flags(cls, flags: FeatureFlags) -> "SidecarSet":
        telemetry = flags.enable_metrics_collection or flags.enable_tracing
        if not flags.enable_log_shipping:
            if telemetry:
                raise InvalidRevision("Metrics collection and tracing require log shipping to be enabled.")
            return cls.NONE
        if flags.enable_metrics_collection and flags.enable_tracing:
            return cls.LOG_METRICS_AND_TRACING
        if flags.enable_metrics_collection:
            return cls.LOG_AND_METRICS
        if flags.enable_tracing:
            return cls.LOG_AND_TRACING
        return cls.LOG_ONLY

    @property
    def log_router(self) -> bool:
        return self != SidecarSet.NONE

    @property
    def collector(self) -> bool:
        return self in {SidecarSet.LOG_AND_METRICS, SidecarSet.LOG_AND_TRACING, SidecarSet.LOG_METRICS_AND_TRACING}

    @property
    def tracing(self) -> bool:
        return self in {SidecarSet.LOG_AND_TRACING, SidecarSet.LOG_METRICS_AND_TRACING}

    @property
    def metrics(self) -> bool:
        return self in {SidecarSet.LOG_AND_METRICS, SidecarSet.LOG_METRICS_AND_TRACING}


@dataclass(frozen=True)
class ConfigDocument:
    """Sidecar configuration blob published under a parameter-store reference."""

    reference: str
    content: str

    def validate(self, owner: str) -> None:
        if not self.reference.strip():
            raise InvalidRevision(f"{owner} configuration reference must not be empty.")
        if not self.content.strip():
            raise InvalidRevision(f"{owner} configuration document '{self.reference}' is empty.")


@dataclass(frozen=True)
class TelemetryDocuments:
    log_router: ConfigDocument | None = None
    collector: ConfigDocument | None = None


@dataclass(frozen=True)
class Grant:
    principal: str
    action: str
    resource: str


@dataclass(frozen=True)
class GraphDiff:
    sidecar_set: SidecarSet
    nodes: tuple[ContainerNode, ...] = ()
    edges: tuple[Edge, ...] = ()
    app_environment: tuple[tuple[str, str], ...] = ()
    app_mount_points: tuple[MountPoint, ...] = ()
    volumes: tuple[str, ...] = ()
    grants: tuple[Grant, ...] = ()


def materialize(
    flags: FeatureFlags,
    documents: TelemetryDocuments = TelemetryDocuments(),
    app_name: str = "app",
    service_name: str = "service",
    cfg: Settings = default_settings,
) -> GraphDiff:
    """Translate feature flags into the extra containers, edges and app configuration they need."""
    sidecar_set = SidecarSet.from_flags(flags)
    if sidecar_set == SidecarSet.NONE:
        return GraphDiff(sidecar_set=sidecar_set)

    nodes: list[ContainerNode] = []
    edges: list[Edge] = []
    env: list[tuple[str, str]] = []
    mounts: list[MountPoint] = []
    volumes: list[str] = []

    if documents.log_router is None:
        raise InvalidRevision("Log shipping is enabled but no log router configuration was supplied.")
    documents.log_router.validate("Log router")
    nodes.append(
        ContainerNode(
            name=LOG_ROUTER,
            image=cfg.log_router_image,
            essential=True,
            environment=(("LOG_DESTINATION", cfg.log_destination),),
            secrets=(("FLUENT_BIT_CONFIG", documents.log_router.reference),),
        )
    )
    grants = [Grant(principal=LOG_ROUTER, action="write", resource=cfg.log_destination)]

    if sidecar_set.collector:
        if documents.collector is None:
            raise InvalidRevision("Metrics/tracing is enabled but no collector configuration was supplied.")
        documents.collector.validate("Collector")
        nodes.append(
            ContainerNode(
                name=COLLECTOR,
                image=cfg.collector_image,
                essential=False,
                depends_on=(Dependency(LOG_ROUTER, Condition.START),),
                secrets=(("AOT_CONFIG_CONTENT", documents.collector.reference),),
            )
        )
        env += [
            ("OTEL_EXPORTER_OTLP_ENDPOINT", cfg.collector_endpoint),
            ("OTEL_EXPORTER_OTLP_PROTOCOL", cfg.collector_protocol),
            ("OTEL_SERVICE_NAME", service_name),
            ("OTEL_METRICS_EXPORTER", "otlp" if sidecar_set.metrics else "none"),
            ("OTEL_TRACES_EXPORTER", "otlp" if sidecar_set.tracing else "none"),
        ]

    if sidecar_set.tracing:
        env += [
            ("OTEL_TRACES_SAMPLER", cfg.traces_sampler),
            ("OTEL_TRACES_SAMPLER_ARG", cfg.traces_sampler_arg),
            ("OTEL_PROPAGATORS", cfg.propagators),
            (cfg.instrumentation_loader_env, cfg.instrumentation_loader_value),
        ]
        shared = MountPoint(INSTRUMENTATION_VOLUME, cfg.instrumentation_mount_path)
        nodes.append(
            ContainerNode(
                name=INSTRUMENTATION_INIT,
                image=cfg.instrumentation_image,
                essential=False,
                command=("cp", "-a", "/autoinstrumentation/.", cfg.instrumentation_mount_path),
                mount_points=(shared,),
            )
        )
        edges.append(Edge(predecessor=INSTRUMENTATION_INIT, successor=app_name, condition=Condition.SUCCESS))
        mounts.append(shared)
        volumes.append(INSTRUMENTATION_VOLUME)

    return GraphDiff(
        sidecar_set=sidecar_set,
        nodes=tuple(nodes),
        edges=tuple(edges),
        app_environment=tuple(env),
        app_mount_points=tuple(mounts),
        volumes=tuple(volumes),
        grants=tuple(grants),
    )
