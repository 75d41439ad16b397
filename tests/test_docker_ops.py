from types import SimpleNamespace

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from bgd import docker_ops
from bgd.docker_ops import DockerBackend, _healthcheck
from bgd.graph import ContainerNode, ContainerState, HealthCheckSpec, MountPoint
from bgd.launcher import ProvisioningError


class FakeContainers:
    def __init__(self):
        self.runs = []
        self.by_id = {}
        self.removed = []
        self.broken = False

    def run(self, image, **kw):
        if image == "missing:1":
            raise ImageNotFound("no such image")
        cid = f"id{len(self.runs)}"
        self.runs.append((image, kw))
        self.by_id[cid] = SimpleNamespace(
            id=cid,
            name=kw["name"],
            labels=dict(kw.get("labels") or {}),
            attrs={"State": {"Status": "running"}, "HostConfig": {"NetworkMode": kw.get("network_mode", "default")}},
            reload=lambda: None,
            remove=lambda force=False, cid=cid: self._remove(cid),
        )
        return self.by_id[cid]

    def _remove(self, cid):
        self.removed.append(cid)
        self.by_id.pop(cid)

    def get(self, cid):
        if self.broken:
            raise APIError("daemon is restarting")
        if cid not in self.by_id:
            raise NotFound("gone")
        return self.by_id[cid]

    def list(self, all=False, filters=None):
        wanted = dict(f.split("=", 1) for f in filters["label"])
        return [c for c in self.by_id.values() if all and wanted.items() <= c.labels.items()]


@pytest.fixture
def client(monkeypatch):
    c = SimpleNamespace(
        containers=FakeContainers(),
        networks=SimpleNamespace(get=lambda name: SimpleNamespace(name=name)),
    )
    monkeypatch.setattr(docker_ops, "_client", lambda: c)
    return c


LABELS = {"bgd.service": "shop", "bgd.environment": "shop-blue", "bgd.task": "t1"}


def test_healthcheck_is_converted_to_nanoseconds():
    node = ContainerNode("app", "shop:1", health_check=HealthCheckSpec(command=("curl", "-f", "x"), interval_s=10))
    hc = _healthcheck(node)
    assert hc["test"] == ["CMD-SHELL", "curl -f x"]
    assert hc["interval"] == 10 * 1_000_000_000
    assert _healthcheck(ContainerNode("log", "fb:1")) is None


def test_task_containers_join_the_pause_containers_namespace(client):
    backend = DockerBackend(pause_image="pause:3.9")
    migrate = backend.start("t1", ContainerNode("migrate", "shop-migrate:1", essential=False), {}, {}, LABELS)
    app = backend.start(
        "t1",
        ContainerNode("app", "shop:1", mount_points=(MountPoint("otel", "/otel"),)),
        {"A": "1"},
        {"otel": "t1-otel"},
        LABELS,
    )
    (pause_image, kw0), (_, kw1), (_, kw2) = client.containers.runs
    assert pause_image == "pause:3.9"
    assert kw0["network"] == "bgd"
    assert kw0["name"] == "bgd-t1"
    assert kw0["labels"]["bgd.container"] == "pause"
    pause = next(cid for cid, c in client.containers.by_id.items() if c.name == "bgd-t1")
    assert kw1["network_mode"] == kw2["network_mode"] == f"container:{pause}"
    assert kw2["volumes"] == {"t1-otel": {"bind": "/otel", "mode": "rw"}}
    assert kw2["labels"]["bgd.container"] == "app"
    assert kw2["restart_policy"] == {"Name": "no"}

    # a finished one-shot container does not take the namespace with it
    backend.stop(migrate)
    assert pause in client.containers.by_id
    assert backend.endpoint(app, 8080) == "http://bgd-t1:8080"


def test_stopping_the_last_member_removes_the_pause_container(client):
    backend = DockerBackend()
    first = backend.start("t1", ContainerNode("log-router", "fb:1"), {}, {}, LABELS)
    second = backend.start("t1", ContainerNode("app", "shop:1"), {}, {}, LABELS)
    backend.stop(second)
    backend.stop(first)
    assert client.containers.by_id == {}
    backend.stop(first)  # already gone


def test_missing_image_is_a_provisioning_error(client):
    with pytest.raises(ProvisioningError, match="missing:1"):
        DockerBackend().start("t1", ContainerNode("app", "missing:1"), {}, {}, LABELS)
    # the pause container started for the failed task is released
    assert client.containers.by_id == {}


def test_status_mapping(client):
    backend = DockerBackend()
    cid = backend.start("t1", ContainerNode("app", "shop:1"), {}, {}, LABELS)
    assert backend.status(cid).state == ContainerState.RUNNING
    client.containers.by_id[cid].attrs["State"] = {"Status": "exited", "ExitCode": 3}
    st = backend.status(cid)
    assert (st.state, st.exit_code) == (ContainerState.EXITED, 3)
    assert backend.status("unknown").state == ContainerState.EXITED


def test_daemon_errors_surface_as_provisioning_errors(client):
    backend = DockerBackend()
    cid = backend.start("t1", ContainerNode("app", "shop:1"), {}, {}, LABELS)
    client.containers.broken = True
    with pytest.raises(ProvisioningError, match="inspect"):
        backend.status(cid)
    with pytest.raises(ProvisioningError, match="endpoint"):
        backend.endpoint(cid, 8080)


def test_list_containers_finds_labeled_containers_pause_last(client, monkeypatch):
    monkeypatch.setattr(docker_ops, "docker_available", lambda: True)
    backend = DockerBackend()
    app = backend.start("t1", ContainerNode("app", "shop:1"), {}, {}, LABELS)
    backend.start("t2", ContainerNode("app", "shop:2"), {}, {}, {**LABELS, "bgd.environment": "shop-green"})
    pause = next(cid for cid, c in client.containers.by_id.items() if c.name == "bgd-t1")

    # a fresh backend holds no in-memory state, as after a restart
    assert DockerBackend().list_containers("shop-blue") == [app, pause]


def test_list_containers_without_docker_is_empty(client, monkeypatch):
    monkeypatch.setattr(docker_ops, "docker_available", lambda: False)
    assert DockerBackend().list_containers("shop-blue") == []
