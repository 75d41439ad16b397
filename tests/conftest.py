from __future__ import annotations

import itertools

import pytest

from bgd import db
from bgd.controller import DeploymentController
from bgd.gateway import TrafficRouter
from bgd.graph import ContainerNode, ContainerState, ContainerStatus, HealthCheckSpec
from bgd.health import HealthPolicy, ProbeResult
from bgd.launcher import ProvisioningError, TaskLauncher
from bgd.revision import build_revision
from bgd.secret_store import MappingSecretStore
from bgd.settings import Settings
from bgd.sidecars import ConfigDocument, FeatureFlags, TelemetryDocuments


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "bgd.db")))
    db.init_db()
    yield


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


class FakeBackend:
    """In-memory container backend.

    ``exit_codes`` makes a container exit right after it starts; ``health``
    overrides the reported health status; ``fail_start`` raises on start;
    ``status_errors`` makes status polling blow up with an unexpected error.
    """

    def __init__(self, exit_codes=None, health=None, fail_start=(), stop_errors=(), status_errors=()):
        self.exit_codes = dict(exit_codes or {})
        self.health = dict(health or {})
        self.fail_start = set(fail_start)
        self.stop_errors = set(stop_errors)
        self.status_errors = set(status_errors)
        self._ids = itertools.count(1)
        self.containers: dict[str, tuple[str, ContainerNode, dict]] = {}  # id -> (task, node, env)
        self.started: list[tuple[str, str]] = []  # (task, container name)
        self.stopped: list[str] = []
        self.labels: dict[str, dict] = {}
        self.volumes: set[str] = set()

    def create_volume(self, name: str) -> str:
        self.volumes.add(name)
        return name

    def remove_volume(self, volume: str) -> None:
        self.volumes.discard(volume)

    def start(self, task_id, node, environment, volumes, labels) -> str:
        if node.name in self.fail_start:
            raise ProvisioningError(f"cannot start {node.name}")
        cid = f"c{next(self._ids)}"
        self.containers[cid] = (task_id, node, dict(environment))
        self.started.append((task_id, node.name))
        self.labels[cid] = dict(labels)
        return cid

    def status(self, container_id: str) -> ContainerStatus:
        _, node, _ = self.containers[container_id]
        if node.name in self.status_errors:
            raise RuntimeError(f"daemon went away while inspecting {node.name}")
        if container_id in self.stopped:
            return ContainerStatus(ContainerState.EXITED, exit_code=137)
        if node.name in self.exit_codes:
            return ContainerStatus(ContainerState.EXITED, exit_code=self.exit_codes[node.name])
        if node.name in self.health:
            return ContainerStatus(ContainerState.RUNNING, health=self.health[node.name])
        return ContainerStatus(ContainerState.RUNNING, health="healthy" if node.health_check else None)

    def stop(self, container_id: str) -> None:
        _, node, _ = self.containers[container_id]
        if node.name in self.stop_errors:
            raise RuntimeError(f"stop failed for {node.name}")
        self.stopped.append(container_id)

    def endpoint(self, container_id: str, port: int) -> str:
        return f"http://10.0.0.{container_id[1:]}:{port}"

    def running(self) -> list[str]:
        return [cid for cid in self.containers if cid not in self.stopped]

    def list_containers(self, environment: str) -> list[str]:
        return [cid for cid in self.running() if self.labels.get(cid, {}).get("bgd.environment") == environment]


class DeferredSpawner:
    """Collects background activities; tests run them explicitly."""

    def __init__(self):
        self.queue: list[tuple] = []

    def __call__(self, target, *args) -> None:
        self.queue.append((target, args))

    def run_next(self) -> None:
        target, args = self.queue.pop(0)
        target(*args)

    def run_all(self) -> None:
        while self.queue:
            self.run_next()


class ScriptedProbe:
    """Probe results per revision id: a bool for every check, or a list consumed in order."""

    def __init__(self, default: bool = True):
        self.default = default
        self.scripts: dict[str, object] = {}
        self.calls: list[tuple[str, float]] = []

    def factory(self, clock):
        def make(revision, policy):
            def probe(env):
                self.calls.append((revision.id, clock()))
                script = self.scripts.get(revision.id, self.default)
                ok = script.pop(0) if isinstance(script, list) else bool(script)
                return ProbeResult(ok, "ok" if ok else "HTTP 503")

            return probe

        return make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def spawner():
    return DeferredSpawner()


@pytest.fixture
def probe():
    return ScriptedProbe()


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def make_controller(clock, backend, spawner, probe, notifications):
    def make(bake_time_s=60.0, interval_s=5.0, healthy_threshold=3, failure_threshold=3, start_period_s=0.0, drain_grace_s=30.0):
        router = TrafficRouter(clock=clock)
        launcher = TaskLauncher(
            backend,
            MappingSecretStore(SECRETS),
            clock=clock,
            sleep=clock.sleep,
            poll_interval_s=1.0,
            start_timeout_s=30.0,
        )
        policy = HealthPolicy(
            interval_s=interval_s,
            timeout_s=2.0,
            healthy_threshold=healthy_threshold,
            start_period_s=start_period_s,
            failure_threshold=failure_threshold,
        )

        def notify(subject, body):
            notifications.append(subject)
            return True

        return DeploymentController(
            router,
            launcher,
            policy=policy,
            probe_factory=probe.factory(clock),
            bake_time_s=bake_time_s,
            drain_grace_s=drain_grace_s,
            clock=clock,
            sleep=clock.sleep,
            spawn=spawner,
            notify=notify,
        )

    return make


SECRETS = {
    "db-creds:username": "app",
    "db-creds:password": "s3cret",
    "/svc/fluent-bit.conf": "[OUTPUT]\n    Name stdout\n",
    "/svc/otel.yaml": "receivers: {otlp: {}}\n",
}

DOCS = TelemetryDocuments(
    log_router=ConfigDocument("/svc/fluent-bit.conf", "[OUTPUT]\n    Name stdout\n"),
    collector=ConfigDocument("/svc/otel.yaml", "receivers: {otlp: {}}\n"),
)


def app_node(image: str = "shop:1", **kw) -> ContainerNode:
    kw.setdefault("health_check", HealthCheckSpec(command=("CMD-SHELL", "curl -f localhost/health")))
    return ContainerNode(name="app", image=image, **kw)


@pytest.fixture
def make_revision():
    def make(revision_id, service="shop", flags=FeatureFlags(), desired_count=1, containers=None, **kw):
        return build_revision(
            service=service,
            containers=containers or [app_node(f"{service}:{revision_id}")],
            app_container="app",
            port=8080,
            flags=flags,
            documents=DOCS,
            desired_count=desired_count,
            revision_id=revision_id,
            **kw,
        )

    return make


@pytest.fixture
def docs():
    return DOCS
