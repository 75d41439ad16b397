from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Color(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Color":
        return Color.GREEN if self == Color.BLUE else Color.BLUE


class AttemptStatus(str, Enum):
    PROVISIONING = "PROVISIONING"
    BAKING = "BAKING"
    PROMOTED = "PROMOTED"
    ROLLED_BACK = "ROLLED_BACK"
    ABORTED = "ABORTED"

    @property
    def terminal(self) -> bool:
        return self in {AttemptStatus.PROMOTED, AttemptStatus.ROLLED_BACK, AttemptStatus.ABORTED}


NON_TERMINAL = (AttemptStatus.PROVISIONING, AttemptStatus.BAKING)


class EnvironmentState(str, Enum):
    IDLE = "IDLE"
    PROVISIONING = "PROVISIONING"
    CANDIDATE = "CANDIDATE"
    PRODUCTION = "PRODUCTION"
    DRAINING = "DRAINING"
    TERMINATED = "TERMINATED"


def environment_id(service: str, color: Color | str) -> str:
    return f"{service}-{Color(color).value}"


def target_group_id(service: str, color: Color | str) -> str:
    return f"{service}-tg-{Color(color).value}"


@dataclass(frozen=True)
class TaskRecord:
    """One running copy of a revision's container set."""

    task_id: str
    containers: dict[str, str]  # container name -> backend container id
    endpoint: str  # base URL of the app container
    volumes: dict[str, str] = field(default_factory=dict)  # declared name -> backend volume


@dataclass
class Environment:
    id: str
    service: str
    color: Color
    target_group: str
    state: EnvironmentState
    revision_id: str | None = None
    tasks: list[TaskRecord] = field(default_factory=list)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["color"] = self.color.value
        d["state"] = self.state.value
        return d


@dataclass
class DeploymentAttempt:
    id: str
    service: str
    revision_id: str
    candidate_environment: str
    previous_environment: str | None
    status: AttemptStatus
    started_at: float
    reason: str | None = None
    bake_deadline: float | None = None
    updated_at: float | None = None
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "revision_id": self.revision_id,
            "candidate_environment": self.candidate_environment,
            "previous_environment": self.previous_environment,
            "status": self.status.value,
            "reason": self.reason,
            "started_at": iso(self.started_at),
            "bake_deadline": iso(self.bake_deadline),
            "updated_at": iso(self.updated_at),
            "finished_at": iso(self.finished_at),
        }


@dataclass(frozen=True)
class TrafficState:
    service: str
    production_environment: str | None
    test_environment: str | None
    last_swap_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "production_environment": self.production_environment,
            "test_environment": self.test_environment,
            "last_swap_at": iso(self.last_swap_at),
        }
