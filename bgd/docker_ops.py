from __future__ import annotations

from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .graph import ContainerNode, ContainerState, ContainerStatus
from .launcher import ProvisioningError
from .settings import settings

_NANO = 1_000_000_000


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def _healthcheck(node: ContainerNode) -> dict[str, Any] | None:
    hc = node.health_check
    if hc is None:
        return None
    test = list(hc.command)
    if test and test[0] not in {"CMD", "CMD-SHELL", "NONE"}:
        test = ["CMD-SHELL", " ".join(test)]
    return {
        "test": test,
        "interval": hc.interval_s * _NANO,
        "timeout": hc.timeout_s * _NANO,
        "retries": hc.retries,
        "start_period": hc.start_period_s * _NANO,
    }


PAUSE = "pause"


class DockerBackend:
    """Container backend on a local Docker daemon.

    Each task gets a pause container that owns the task's network namespace.
    The task's containers join it, so sidecars reach each other on localhost
    and one-shot containers may exit without taking the namespace with them.
    Every container is labeled; ``list_containers`` finds them again after a
    restart.
    """

    def __init__(self, network: str | None = None, pause_image: str | None = None):
        self.network = network or settings.docker_network
        self.pause_image = pause_image or settings.pause_image
        self._anchors: dict[str, str] = {}  # task id -> pause container id
        self._members: dict[str, set[str]] = {}  # task id -> started container ids

    def create_volume(self, name: str) -> str:
        try:
            vol = _client().volumes.create(name=name, labels={"bgd.managed": "true"})
        except DockerException as e:
            raise ProvisioningError(f"Could not create volume '{name}': {e}") from e
        return vol.name

    def remove_volume(self, volume: str) -> None:
        try:
            _client().volumes.get(volume).remove(force=True)
        except NotFound:
            return

    def _anchor(self, c: docker.DockerClient, task_id: str, labels: dict[str, str]) -> str:
        anchor = self._anchors.get(task_id)
        if anchor is not None:
            return anchor
        ensure_network()
        pause = c.containers.run(
            self.pause_image,
            detach=True,
            name=f"bgd-{task_id}",
            labels={**labels, "bgd.container": PAUSE},
            restart_policy={"Name": "no"},
            network=self.network,
        )
        self._anchors[task_id] = pause.id
        self._members[task_id] = set()
        return pause.id

    def _release_anchor(self, task_id: str) -> None:
        anchor = self._anchors.pop(task_id, None)
        self._members.pop(task_id, None)
        if anchor is None:
            return
        try:
            _client().containers.get(anchor).remove(force=True)
        except NotFound:
            return

    def start(
        self,
        task_id: str,
        node: ContainerNode,
        environment: dict[str, str],
        volumes: dict[str, str],
        labels: dict[str, str],
    ) -> str:
        mounts = {
            volumes[m.source_volume]: {"bind": m.container_path, "mode": "ro" if m.read_only else "rw"}
            for m in node.mount_points
            if m.source_volume in volumes
        }
        name = f"bgd-{task_id}-{node.name}"
        try:
            c = _client()
            anchor = self._anchor(c, task_id, labels)
            container = c.containers.run(
                node.image,
                command=list(node.command) or None,
                detach=True,
                name=name,
                environment=environment,
                labels={**labels, "bgd.container": node.name},
                volumes=mounts or None,
                healthcheck=_healthcheck(node),
                # Restarts are the controller's decision; keep Docker's policy off.
                restart_policy={"Name": "no"},
                network_mode=f"container:{anchor}",
            )
        except DockerException as e:
            if not self._members.get(task_id):
                self._release_anchor(task_id)
            raise ProvisioningError(f"Could not start container '{node.name}' from {node.image}: {e}") from e

        self._members[task_id].add(container.id)
        log_event("INFO", f"Started container {name} from image {node.image}", service_name=labels.get("bgd.service"))
        return container.id

    def status(self, container_id: str) -> ContainerStatus:
        try:
            cont = _client().containers.get(container_id)
            cont.reload()
        except NotFound:
            return ContainerStatus(ContainerState.EXITED, exit_code=-1)
        except DockerException as e:
            raise ProvisioningError(f"Could not inspect container {container_id[:12]}: {e}") from e
        state = cont.attrs.get("State", {})
        raw = state.get("Status", "created")
        health = (state.get("Health") or {}).get("Status")
        if raw in {"exited", "dead"}:
            return ContainerStatus(ContainerState.EXITED, exit_code=state.get("ExitCode"), health=health)
        if raw in {"running", "paused", "restarting"}:
            return ContainerStatus(ContainerState.RUNNING, health=health)
        return ContainerStatus(ContainerState.PENDING)

    def stop(self, container_id: str) -> None:
        try:
            _client().containers.get(container_id).remove(force=True)
        except NotFound:
            pass
        for task_id, anchor in list(self._anchors.items()):
            if anchor == container_id:
                self._anchors.pop(task_id)
                self._members.pop(task_id, None)
        for task_id, members in list(self._members.items()):
            if container_id in members:
                members.discard(container_id)
                if not members:
                    self._release_anchor(task_id)

    def endpoint(self, container_id: str, port: int) -> str:
        """HTTP base URL usable from within the docker network: the task's pause container name."""
        try:
            c = _client()
            mode = c.containers.get(container_id).attrs.get("HostConfig", {}).get("NetworkMode", "")
            if not mode.startswith("container:"):
                raise ProvisioningError(f"Container {container_id[:12]} is not attached to a task namespace.")
            host = c.containers.get(mode.split(":", 1)[1]).name
        except DockerException as e:
            raise ProvisioningError(f"Could not resolve the endpoint of {container_id[:12]}: {e}") from e
        return f"http://{host}:{int(port)}"

    def list_containers(self, environment: str) -> list[str]:
        """Ids of every container labeled for ``environment``, pause containers last."""
        if not docker_available():
            return []
        found = _client().containers.list(all=True, filters={"label": [f"bgd.environment={environment}"]})
        found.sort(key=lambda x: x.labels.get("bgd.container") == PAUSE)
        return [x.id for x in found]
