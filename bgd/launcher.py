from __future__ import annotations

import time
from threading import Event
from typing import Callable, Protocol

from . import db
from .graph import ContainerDAG, ContainerNode, ContainerState, ContainerStatus, Dependency, Readiness
from .revision import Revision
from .runtime import Environment, TaskRecord
from .secret_store import SecretNotFound, SecretStore


class ProvisioningError(Exception):
    """Candidate resources failed to materialize."""


class ContainerDependencyViolation(ProvisioningError):
    """An essential container's start condition was never satisfied; the task was stopped."""

    def __init__(self, container: str, dependency: Dependency | None, reason: str):
        self.container = container
        self.dependency = dependency
        self.reason = reason
        if dependency is not None:
            msg = f"Container '{container}' waits for '{dependency.container}' {dependency.condition.value}: {reason}"
        else:
            msg = f"Container '{container}': {reason}"
        super().__init__(msg)


class ContainerBackend(Protocol):
    def create_volume(self, name: str) -> str: ...

    def remove_volume(self, volume: str) -> None: ...

    def start(
        self,
        task_id: str,
        node: ContainerNode,
        environment: dict[str, str],
        volumes: dict[str, str],
        labels: dict[str, str],
    ) -> str: ...

    def status(self, container_id: str) -> ContainerStatus: ...

    def stop(self, container_id: str) -> None: ...

    def endpoint(self, container_id: str, port: int) -> str: ...

    def list_containers(self, environment: str) -> list[str]: ...


class TaskLauncher:
    """Starts a revision's containers in dependency order, honoring start conditions."""

    def __init__(
        self,
        backend: ContainerBackend,
        secret_store: SecretStore,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval_s: float = 1.0,
        start_timeout_s: float = 300.0,
    ):
        self.backend = backend
        self.secret_store = secret_store
        self.clock = clock
        self.sleep = sleep
        self.poll_interval_s = poll_interval_s
        self.start_timeout_s = start_timeout_s

    def launch(self, env: Environment, revision: Revision, cancelled: Event | None = None) -> list[TaskRecord]:
        """Launch ``revision.desired_count`` tasks; all-or-nothing."""
        tasks: list[TaskRecord] = []
        try:
            for i in range(revision.desired_count):
                tasks.append(self.launch_task(env, revision, f"{env.id}-{revision.id}-{i}", cancelled))
        except ProvisioningError:
            self.teardown(tasks)
            raise
        return tasks

    def _container_env(self, node: ContainerNode) -> dict[str, str]:
        env = node.env_dict()
        for name, ref in node.secrets:
            try:
                env[name] = self.secret_store.resolve(ref)
            except SecretNotFound:
                raise ProvisioningError(f"Secret '{ref}' for container '{node.name}' could not be resolved.") from None
        return env

    def _check_essential_exits(self, graph: ContainerDAG, statuses: dict[str, ContainerStatus]) -> None:
        for name, st in statuses.items():
            if st.state == ContainerState.EXITED and graph.node(name).essential:
                raise ProvisioningError(f"Essential container '{name}' exited with code {st.exit_code}; task stopped.")

    def launch_task(self, env: Environment, revision: Revision, task_id: str, cancelled: Event | None = None) -> TaskRecord:
        graph = revision.graph
        labels = {"bgd.service": env.service, "bgd.environment": env.id, "bgd.revision": revision.id, "bgd.task": task_id}
        volumes: dict[str, str] = {}
        started: dict[str, str] = {}
        skipped: set[str] = set()
        deadline = self.clock() + self.start_timeout_s

        try:
            for v in revision.volumes:
                volumes[v] = self.backend.create_volume(f"{task_id}-{v}")

            while True:
                if cancelled is not None and cancelled.is_set():
                    raise ProvisioningError("Provisioning cancelled.")

                statuses = {name: self.backend.status(cid) for name, cid in started.items()}
                self._check_essential_exits(graph, statuses)

                progressed = False
                for node in graph.nodes:
                    if node.name in started or node.name in skipped:
                        continue
                    readiness, dep = graph.readiness(node.name, statuses, skipped)
                    if readiness == Readiness.READY:
                        started[node.name] = self.backend.start(
                            task_id, node, self._container_env(node), volumes, labels
                        )
                        progressed = True
                    elif readiness == Readiness.BLOCKED:
                        if node.essential:
                            raise ContainerDependencyViolation(node.name, dep, "condition can never be satisfied")
                        skipped.add(node.name)
                        progressed = True
                        db.log_event(
                            "WARN",
                            f"Skipped non-essential container '{node.name}' in {task_id}: "
                            f"'{dep.container}' cannot reach {dep.condition.value}",
                            service_name=env.service,
                            revision=revision.id,
                        )

                if all(n.name in started or n.name in skipped for n in graph.nodes):
                    break

                if self.clock() >= deadline:
                    for node in graph.nodes:
                        if node.name in started or node.name in skipped:
                            continue
                        _, dep = graph.readiness(node.name, statuses, skipped)
                        if node.essential:
                            raise ContainerDependencyViolation(
                                node.name, dep, f"not satisfied within {self.start_timeout_s:.0f}s"
                            )
                        skipped.add(node.name)
                    break

                if not progressed:
                    self.sleep(self.poll_interval_s)

            app_id = started[revision.app_container]
            return TaskRecord(
                task_id=task_id,
                containers=dict(started),
                endpoint=self.backend.endpoint(app_id, revision.port),
                volumes=dict(volumes),
            )
        except ProvisioningError:
            self._discard(task_id, started, volumes)
            raise
        except Exception as e:
            self._discard(task_id, started, volumes)
            raise ProvisioningError(f"Task {task_id} failed while starting: {type(e).__name__}: {e}") from e

    def _discard(self, task_id: str, started: dict[str, str], volumes: dict[str, str]) -> None:
        errors = self.teardown([TaskRecord(task_id=task_id, containers=dict(started), endpoint="", volumes=volumes)])
        for err in errors:
            db.log_event("ERROR", f"Cleanup of failed task incomplete (not retried): {err}")

    def teardown(self, tasks: list[TaskRecord]) -> list[str]:
        """Stop containers (reverse start order) and remove volumes.

        Best-effort: every container is attempted once; failures are returned, not retried.
        """
        errors: list[str] = []
        for task in tasks:
            for name, cid in reversed(list(task.containers.items())):
                try:
                    self.backend.stop(cid)
                except Exception as e:  # reported by the caller, never retried
                    errors.append(f"{task.task_id}/{name}: {type(e).__name__}: {e}")
            for v in task.volumes.values():
                try:
                    self.backend.remove_volume(v)
                except Exception as e:
                    errors.append(f"{task.task_id}/volume {v}: {type(e).__name__}: {e}")
        return errors

    def sweep(self, environment_id: str) -> list[str]:
        """Stop every container the backend still holds for an environment, recorded or not."""
        errors: list[str] = []
        for cid in self.backend.list_containers(environment_id):
            try:
                self.backend.stop(cid)
            except Exception as e:
                errors.append(f"{environment_id}/{cid}: {type(e).__name__}: {e}")
        return errors
