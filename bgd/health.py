from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import httpx

from .runtime import Environment
from .settings import Settings, settings as default_settings


class HealthCheckTimeout(Exception):
    """The candidate never reached the healthy threshold within the bake window."""


class CircuitBreakerTripped(Exception):
    """Consecutive failed checks reached the circuit-breaker threshold."""


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx status is healthy; other statuses, timeouts and connection errors are not.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not resp.is_success:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HealthVerdict(str, Enum):
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None


Probe = Callable[[Environment], ProbeResult]


@dataclass(frozen=True)
class HealthPolicy:
    interval_s: float = 30.0
    timeout_s: float = 5.0
    healthy_threshold: int = 3  # R consecutive passes
    start_period_s: float = 0.0
    failure_threshold: int = 3  # F consecutive failures trip the breaker

    @classmethod
    def from_settings(cls, cfg: Settings = default_settings) -> "HealthPolicy":
        return cls(
            interval_s=cfg.health_interval_s,
            timeout_s=cfg.health_timeout_s,
            healthy_threshold=max(1, cfg.health_healthy_threshold),
            start_period_s=cfg.health_start_period_s,
            failure_threshold=max(1, cfg.health_failure_threshold),
        )


class HttpProbe:
    """Checks every task of an environment; the environment passes only if all tasks pass."""

    def __init__(self, health_path: str, timeout_s: float, check: Callable[..., tuple[bool, str, float | None]] = check_health):
        self.health_path = health_path
        self.timeout_s = timeout_s
        self.check = check

    def __call__(self, env: Environment) -> ProbeResult:
        if not env.tasks:
            return ProbeResult(False, "No running tasks")
        worst: float | None = None
        for task in env.tasks:
            ok, msg, latency = self.check(f"{task.endpoint}{self.health_path}", timeout_s=self.timeout_s)
            if latency is not None:
                worst = latency if worst is None else max(worst, latency)
            if not ok:
                return ProbeResult(False, f"{task.task_id}: {msg}", latency)
        return ProbeResult(True, "Healthy", worst)


class HealthGate:
    """Debounced health signal for one environment.

    Healthy after ``healthy_threshold`` consecutive passing checks. The circuit
    breaker trips after ``failure_threshold`` consecutive failures. Failures
    inside the start period do not count; a pass ends the start period early.
    """

    def __init__(self, policy: HealthPolicy, probe: Probe, started_at: float):
        self.policy = policy
        self.probe = probe
        self.started_at = started_at
        self.consecutive_passes = 0
        self.consecutive_failures = 0
        self.checks = 0
        self.last: ProbeResult | None = None
        self._in_start_period = policy.start_period_s > 0

    @property
    def healthy(self) -> bool:
        return self.consecutive_passes >= self.policy.healthy_threshold

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.policy.failure_threshold

    def observe(self, result: ProbeResult, now: float) -> HealthVerdict:
        self.checks += 1
        self.last = result
        if self._in_start_period and now - self.started_at >= self.policy.start_period_s:
            self._in_start_period = False

        if result.ok:
            self._in_start_period = False
            self.consecutive_passes += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_passes = 0
            if not self._in_start_period:
                self.consecutive_failures += 1
        return HealthVerdict.HEALTHY if self.healthy else HealthVerdict.UNHEALTHY

    def sample(self, environment: Environment, now: float) -> HealthVerdict:
        return self.observe(self.probe(environment), now)
