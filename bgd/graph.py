"""Container startup graph for one revision.

A task is a set of containers that start together. Each container may wait on
other containers of the same task reaching a condition (started, exited
successfully, healthy, exited). ``build`` validates the declared nodes and
edges and returns an immutable :class:`ContainerDAG` whose node order is a
deterministic topological start order.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping


class Condition(str, Enum):
    START = "START"
    SUCCESS = "SUCCESS"
    HEALTHY = "HEALTHY"
    COMPLETE = "COMPLETE"


class Readiness(str, Enum):
    READY = "READY"
    WAITING = "WAITING"
    BLOCKED = "BLOCKED"  # the condition can never be satisfied


class InvalidRevision(ValueError):
    """A revision (or its container graph) is malformed and was rejected before provisioning."""


class CycleDetected(InvalidRevision):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Container dependency cycle: {' -> '.join(cycle)}")


@dataclass(frozen=True)
class HealthCheckSpec:
    command: tuple[str, ...]
    interval_s: int = 30
    timeout_s: int = 5
    retries: int = 3
    start_period_s: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": list(self.command),
            "interval_s": self.interval_s,
            "timeout_s": self.timeout_s,
            "retries": self.retries,
            "start_period_s": self.start_period_s,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HealthCheckSpec":
        return cls(
            command=tuple(data["command"]),
            interval_s=int(data.get("interval_s", 30)),
            timeout_s=int(data.get("timeout_s", 5)),
            retries=int(data.get("retries", 3)),
            start_period_s=int(data.get("start_period_s", 0)),
        )


@dataclass(frozen=True)
class MountPoint:
    source_volume: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class Dependency:
    container: str
    condition: Condition


@dataclass(frozen=True)
class Edge:
    """Extra dependency declared outside of a node: ``successor`` waits on ``predecessor``."""

    predecessor: str
    successor: str
    condition: Condition


@dataclass(frozen=True)
class ContainerNode:
    name: str
    image: str
    essential: bool = True
    depends_on: tuple[Dependency, ...] = ()
    health_check: HealthCheckSpec | None = None
    mount_points: tuple[MountPoint, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    secrets: tuple[tuple[str, str], ...] = ()  # env name -> secret reference
    command: tuple[str, ...] = ()
    port: int | None = None

    def env_dict(self) -> dict[str, str]:
        return dict(self.environment)

    def secret_dict(self) -> dict[str, str]:
        return dict(self.secrets)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "essential": self.essential,
            "depends_on": [{"container": d.container, "condition": d.condition.value} for d in self.depends_on],
            "health_check": self.health_check.to_dict() if self.health_check else None,
            "mount_points": [
                {"source_volume": m.source_volume, "container_path": m.container_path, "read_only": m.read_only}
                for m in self.mount_points
            ],
            "environment": [list(kv) for kv in self.environment],
            "secrets": [list(kv) for kv in self.secrets],
            "command": list(self.command),
            "port": self.port,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContainerNode":
        hc = data.get("health_check")
        return cls(
            name=data["name"],
            image=data["image"],
            essential=bool(data.get("essential", True)),
            depends_on=tuple(
                Dependency(d["container"], Condition(d["condition"])) for d in data.get("depends_on", [])
            ),
            health_check=HealthCheckSpec.from_dict(hc) if hc else None,
            mount_points=tuple(
                MountPoint(m["source_volume"], m["container_path"], bool(m.get("read_only", False)))
                for m in data.get("mount_points", [])
            ),
            environment=tuple((k, v) for k, v in data.get("environment", [])),
            secrets=tuple((k, v) for k, v in data.get("secrets", [])),
            command=tuple(data.get("command", [])),
            port=data.get("port"),
        )


class ContainerState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    EXITED = "EXITED"


@dataclass(frozen=True)
class ContainerStatus:
    """Observed state of one started container."""

    state: ContainerState
    exit_code: int | None = None
    health: str | None = None  # None | starting | healthy | unhealthy


def condition_readiness(condition: Condition, status: ContainerStatus | None, skipped: bool = False) -> Readiness:
    """Evaluate a single dependency condition against the predecessor's observed status.

    ``status`` is None while the predecessor has not been started yet. A
    ``skipped`` predecessor will never start.
    """
    if skipped:
        return Readiness.BLOCKED
    if status is None or status.state == ContainerState.PENDING:
        return Readiness.WAITING

    exited = status.state == ContainerState.EXITED
    if condition == Condition.START:
        return Readiness.READY
    if condition == Condition.COMPLETE:
        return Readiness.READY if exited else Readiness.WAITING
    if condition == Condition.SUCCESS:
        if not exited:
            return Readiness.WAITING
        return Readiness.READY if status.exit_code == 0 else Readiness.BLOCKED
    # HEALTHY
    if exited or status.health == "unhealthy":
        return Readiness.BLOCKED
    return Readiness.READY if status.health == "healthy" else Readiness.WAITING


@dataclass(frozen=True)
class ContainerDAG:
    """Validated container graph; ``nodes`` are in start order with all edges merged into ``depends_on``."""

    nodes: tuple[ContainerNode, ...]
    _index: dict[str, ContainerNode] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._index.update({n.name: n for n in self.nodes})

    @property
    def names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def node(self, name: str) -> ContainerNode:
        try:
            return self._index[name]
        except KeyError:
            raise KeyError(f"unknown container '{name}'") from None

    def dependencies(self, name: str) -> tuple[Dependency, ...]:
        return self.node(name).depends_on

    def essential_names(self) -> list[str]:
        return [n.name for n in self.nodes if n.essential]

    def successors(self, name: str) -> list[str]:
        return [n.name for n in self.nodes if any(d.container == name for d in n.depends_on)]

    def readiness(
        self,
        name: str,
        statuses: Mapping[str, ContainerStatus],
        skipped: Iterable[str] = (),
    ) -> tuple[Readiness, Dependency | None]:
        """Can ``name`` start now, given the statuses of already-started containers?

        Returns the overall readiness and, unless READY, the first dependency
        responsible for it.
        """
        skipped = set(skipped)
        waiting: Dependency | None = None
        for dep in self.dependencies(name):
            r = condition_readiness(dep.condition, statuses.get(dep.container), dep.container in skipped)
            if r == Readiness.BLOCKED:
                return Readiness.BLOCKED, dep
            if r == Readiness.WAITING and waiting is None:
                waiting = dep
        if waiting is not None:
            return Readiness.WAITING, waiting
        return Readiness.READY, None

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [n.to_dict() for n in self.nodes]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContainerDAG":
        return build([ContainerNode.from_dict(n) for n in data["nodes"]])


def _find_cycle(remaining: list[str], deps: dict[str, list[str]]) -> list[str]:
    # Walk predecessor links among nodes Kahn's algorithm could not order; any walk revisits a node.
    rem = set(remaining)
    start = remaining[0]
    path: list[str] = []
    seen: dict[str, int] = {}
    cur = start
    while cur not in seen:
        seen[cur] = len(path)
        path.append(cur)
        cur = next(p for p in deps[cur] if p in rem)
    cycle = path[seen[cur]:] + [cur]
    cycle.reverse()
    return cycle


def build(nodes: Iterable[ContainerNode], edges: Iterable[Edge] = ()) -> ContainerDAG:
    """Validate containers and their dependencies and return them in start order.

    Raises InvalidRevision for malformed input and CycleDetected when the
    dependencies do not form a DAG.
    """
    nodes = list(nodes)
    if not nodes:
        raise InvalidRevision("A revision needs at least one container.")

    by_name: dict[str, ContainerNode] = {}
    for n in nodes:
        if not n.name:
            raise InvalidRevision("Container name must not be empty.")
        if n.name in by_name:
            raise InvalidRevision(f"Duplicate container name '{n.name}'.")
        by_name[n.name] = n

    if not any(n.essential for n in nodes):
        raise InvalidRevision("At least one container must be essential.")

    merged: dict[str, list[Dependency]] = {n.name: list(n.depends_on) for n in nodes}
    for e in edges:
        if e.successor not in by_name:
            raise InvalidRevision(f"Edge references unknown container '{e.successor}'.")
        dep = Dependency(e.predecessor, Condition(e.condition))
        if dep not in merged[e.successor]:
            merged[e.successor].append(dep)

    for name, deps in merged.items():
        seen_preds: set[str] = set()
        for d in deps:
            if d.container not in by_name:
                raise InvalidRevision(f"Container '{name}' depends on unknown container '{d.container}'.")
            if d.container == name:
                raise CycleDetected([name, name])
            if d.container in seen_preds:
                raise InvalidRevision(f"Container '{name}' declares more than one condition on '{d.container}'.")
            seen_preds.add(d.container)
            if d.condition == Condition.HEALTHY and by_name[d.container].health_check is None:
                raise InvalidRevision(
                    f"Container '{name}' waits for '{d.container}' to be HEALTHY but it has no health check."
                )

    # Kahn's algorithm; ties broken by declaration order so the result is deterministic.
    order_pos = {n.name: i for i, n in enumerate(nodes)}
    indegree = {name: len(deps) for name, deps in merged.items()}
    dependents: dict[str, list[str]] = {n.name: [] for n in nodes}
    for name, deps in merged.items():
        for d in deps:
            dependents[d.container].append(name)

    ready = sorted((n for n, deg in indegree.items() if deg == 0), key=order_pos.__getitem__)
    ordered: list[str] = []
    while ready:
        cur = ready.pop(0)
        ordered.append(cur)
        for succ in dependents[cur]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                ready.append(succ)
        ready.sort(key=order_pos.__getitem__)

    if len(ordered) != len(nodes):
        remaining = [n.name for n in nodes if n.name not in set(ordered)]
        pred_names = {name: [d.container for d in merged[name]] for name in merged}
        raise CycleDetected(_find_cycle(remaining, pred_names))

    return ContainerDAG(nodes=tuple(replace(by_name[name], depends_on=tuple(merged[name])) for name in ordered))
