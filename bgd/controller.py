from __future__ import annotations

import secrets
import time
from threading import Event, RLock, Thread
from typing import Callable

from . import db
from .alerts import deployment_alert, send_email
from .gateway import SwapConflict, TrafficRouter
from .graph import InvalidRevision
from .health import CircuitBreakerTripped, HealthCheckTimeout, HealthGate, HealthPolicy, HttpProbe, Probe
from .launcher import ProvisioningError, TaskLauncher
from .revision import Revision, validate_service_name
from .runtime import (
    NON_TERMINAL,
    AttemptStatus,
    Color,
    DeploymentAttempt,
    Environment,
    EnvironmentState,
    TrafficState,
    environment_id,
    target_group_id,
)
from .settings import Settings, settings as default_settings

Spawn = Callable[..., None]


def thread_spawn(target: Callable[..., None], *args) -> None:
    Thread(target=target, args=args, daemon=True).start()


class DeploymentController:
    """Blue/green state machine: provision, bake, then promote or roll back.

    Each attempt runs its control loop in the background (``spawn``); callers
    only wait for the attempt to be recorded. Attempts are persisted, and
    every status change is a compare-and-set under ``_lock``.
    """

    def __init__(
        self,
        router: TrafficRouter,
        launcher: TaskLauncher,
        policy: HealthPolicy | None = None,
        probe_factory: Callable[[Revision, HealthPolicy], Probe] | None = None,
        bake_time_s: float | None = None,
        drain_grace_s: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Spawn = thread_spawn,
        notify: Callable[[str, str], bool] = send_email,
        cfg: Settings = default_settings,
    ):
        self.router = router
        self.launcher = launcher
        self.cfg = cfg
        self.policy = policy or HealthPolicy.from_settings(cfg)
        self.probe_factory = probe_factory or (lambda rev, pol: HttpProbe(rev.health_path, pol.timeout_s))
        self.bake_time_s = cfg.bake_time_s if bake_time_s is None else bake_time_s
        self.drain_grace_s = cfg.drain_grace_s if drain_grace_s is None else drain_grace_s
        self.clock = clock
        self.sleep = sleep
        self.spawn = spawn
        self.notify = notify
        self._lock = RLock()
        self._cancel: dict[str, Event] = {}

    # ------------------------------------------------------------------ services

    def register_service(self, name: str, production_port: int | None = None, test_port: int | None = None) -> TrafficState:
        validate_service_name(name)
        production_port = int(production_port or self.cfg.production_port)
        test_port = int(test_port or self.cfg.test_port)
        with self._lock:
            if db.get_service(name):
                raise ValueError(f"Service '{name}' is already registered.")
            used = {p for s in db.list_services() for p in (s.production_port, s.test_port)}
            clash = {production_port, test_port} & used
            if clash:
                raise ValueError(f"Listener port(s) already in use: {sorted(clash)}")
            if production_port == test_port:
                raise ValueError("production and test listeners need distinct ports")
            db.create_service(name, production_port, test_port)
            for color in Color:
                db.save_environment(
                    Environment(
                        id=environment_id(name, color),
                        service=name,
                        color=color,
                        target_group=target_group_id(name, color),
                        state=EnvironmentState.IDLE,
                    )
                )
            state = self._register_routes(name, production_port, test_port)
        db.log_event("INFO", f"Registered service (production :{production_port}, test :{test_port})", service_name=name)
        return state

    def _register_routes(self, name: str, production_port: int, test_port: int) -> TrafficState:
        envs = {environment_id(name, c): target_group_id(name, c) for c in Color}
        state = self.router.register(name, production_port, test_port, envs)
        for env in db.list_environments(name):
            if env.tasks and env.state in {EnvironmentState.PRODUCTION, EnvironmentState.DRAINING}:
                self.router.register_targets(env.target_group, [t.endpoint for t in env.tasks])
        return state

    def load_services(self) -> None:
        for svc in db.list_services():
            self._register_routes(svc.name, svc.production_port, svc.test_port)

    # ------------------------------------------------------------------ queries

    def get_attempt(self, attempt_id: str) -> DeploymentAttempt:
        a = db.get_attempt(attempt_id)
        if a is None:
            raise KeyError("unknown deployment attempt")
        return a

    def list_attempts(self, service: str) -> list[DeploymentAttempt]:
        return db.list_attempts(service)

    def current_attempt(self, service: str) -> DeploymentAttempt | None:
        active = db.list_attempts(service, NON_TERMINAL)
        return active[0] if active else None

    def environments(self, service: str) -> list[Environment]:
        return db.list_environments(service)

    # ------------------------------------------------------------------ commands

    def submit(self, service: str, revision: Revision) -> DeploymentAttempt:
        """Record a new attempt in PROVISIONING and start its control loop in the background.

        Raises SwapConflict when another attempt for the service is still in
        flight (or the previous production environment is still draining).
        """
        if revision.service != service:
            raise InvalidRevision(f"Revision was built for '{revision.service}', not '{service}'.")
        with self._lock:
            if db.get_service(service) is None:
                raise KeyError(f"unknown service '{service}'")
            active = db.list_attempts(service, NON_TERMINAL)
            if active:
                raise SwapConflict(f"Deployment {active[0].id} for '{service}' is still {active[0].status.value}.")

            production = self.router.state(service).production_environment
            color = Color.BLUE if production is None else db.get_environment(production).color.other
            candidate = db.get_environment(environment_id(service, color))
            if candidate.state == EnvironmentState.DRAINING:
                raise SwapConflict(f"Environment {candidate.id} is still draining.")

            now = self.clock()
            db.save_revision(service, revision.to_dict())
            attempt = DeploymentAttempt(
                id=f"dep-{secrets.token_hex(6)}",
                service=service,
                revision_id=revision.id,
                candidate_environment=candidate.id,
                previous_environment=production,
                status=AttemptStatus.PROVISIONING,
                started_at=now,
                updated_at=now,
            )
            db.insert_attempt(attempt)
            candidate.state = EnvironmentState.PROVISIONING
            candidate.revision_id = revision.id
            candidate.tasks = []
            db.save_environment(candidate)
            self._cancel[attempt.id] = Event()

        db.log_event(
            "INFO",
            f"Deployment {attempt.id} started: provisioning {candidate.id} ({revision.sidecar_set.value})",
            service_name=service,
            revision=revision.id,
        )
        self.spawn(self._run, attempt.id, revision)
        return attempt

    def abort(self, attempt_id: str, reason: str = "Aborted by operator") -> DeploymentAttempt:
        """Force ROLLED_BACK while provisioning or baking; no effect on terminal attempts."""
        attempt = self.get_attempt(attempt_id)
        if attempt.status.terminal:
            return attempt
        return self.rollback(attempt_id, reason)

    def rollback(
        self, attempt_id: str, reason: str, status: AttemptStatus = AttemptStatus.ROLLED_BACK
    ) -> DeploymentAttempt:
        """Tear down the candidate only. Repeated calls on a terminal attempt are no-ops."""
        with self._lock:
            attempt = self.get_attempt(attempt_id)
            if attempt.status.terminal:
                return attempt
            now = self.clock()
            attempt.status = status
            attempt.reason = reason
            attempt.updated_at = now
            attempt.finished_at = now
            db.update_attempt(attempt)
            cancel = self._cancel.pop(attempt_id, None)
            if cancel is not None:
                cancel.set()

            env = db.get_environment(attempt.candidate_environment)
            tasks = list(env.tasks)
            if self.router.state(attempt.service).test_environment == env.id:
                self.router.release_test(attempt.service)
            self.router.clear_targets(env.target_group)
            env.state = EnvironmentState.TERMINATED
            env.tasks = []
            db.save_environment(env)

        db.log_event(
            "ERROR",
            f"Deployment {attempt.id} {status.value}: {reason}",
            service_name=attempt.service,
            revision=attempt.revision_id,
        )
        errors = self.launcher.teardown(tasks)
        if errors:
            db.log_event(
                "ERROR",
                f"Teardown of {env.id} incomplete (not retried): {'; '.join(errors)}",
                service_name=attempt.service,
                revision=attempt.revision_id,
            )
        self.notify(*deployment_alert(attempt.service, attempt.id, status.value, reason))
        return attempt

    def recover(self) -> list[DeploymentAttempt]:
        """Reload routes and abort attempts a previous process left in flight."""
        self.load_services()
        aborted = [
            self.rollback(a.id, "Controller restarted while the attempt was in flight", status=AttemptStatus.ABORTED)
            for a in db.list_attempts(statuses=NON_TERMINAL)
        ]
        for a in aborted:
            # Containers started before the crash were never recorded on the environment.
            errors = self.launcher.sweep(a.candidate_environment)
            if errors:
                db.log_event(
                    "ERROR",
                    f"Cleanup of {a.candidate_environment} incomplete (not retried): {'; '.join(errors)}",
                    service_name=a.service,
                    revision=a.revision_id,
                )
        for svc in db.list_services():
            for env in db.list_environments(svc.name):
                if env.state == EnvironmentState.DRAINING:
                    self.spawn(self._drain, svc.name, env.id)
        return aborted

    # ------------------------------------------------------------------ control loop

    def _run(self, attempt_id: str, revision: Revision) -> None:
        try:
            if self._provision(attempt_id, revision):
                self._bake(attempt_id, revision)
        except Exception as e:  # thread boundary: the attempt must not be left in flight
            self.rollback(attempt_id, f"Control loop failed: {type(e).__name__}: {e}")

    def _provision(self, attempt_id: str, revision: Revision) -> bool:
        attempt = self.get_attempt(attempt_id)
        if attempt.status != AttemptStatus.PROVISIONING:
            return False
        env = db.get_environment(attempt.candidate_environment)
        cancelled = self._cancel.get(attempt_id) or Event()
        try:
            tasks = self.launcher.launch(env, revision, cancelled)
        except ProvisioningError as e:
            self.rollback(attempt_id, f"{type(e).__name__}: {e}")
            return False

        with self._lock:
            attempt = self.get_attempt(attempt_id)
            if attempt.status != AttemptStatus.PROVISIONING:
                stale = True
            else:
                stale = False
                env.tasks = tasks
                env.state = EnvironmentState.CANDIDATE
                db.save_environment(env)
                self.router.register_targets(env.target_group, [t.endpoint for t in tasks])
                self.router.attach_test(attempt.service, env.id)
                now = self.clock()
                attempt.status = AttemptStatus.BAKING
                attempt.bake_deadline = now + self.bake_time_s
                attempt.updated_at = now
                db.update_attempt(attempt)
        if stale:
            # Aborted while the tasks were starting.
            errors = self.launcher.teardown(tasks)
            if errors:
                db.log_event(
                    "ERROR",
                    f"Teardown of {env.id} incomplete (not retried): {'; '.join(errors)}",
                    service_name=attempt.service,
                    revision=attempt.revision_id,
                )
            return False

        db.log_event(
            "INFO",
            f"Deployment {attempt_id} baking for {self.bake_time_s:.0f}s on the test listener ({len(tasks)} task(s))",
            service_name=attempt.service,
            revision=attempt.revision_id,
        )
        return True

    def _bake(self, attempt_id: str, revision: Revision) -> None:
        gate = HealthGate(self.policy, self.probe_factory(revision, self.policy), started_at=self.clock())
        while True:
            attempt = self.get_attempt(attempt_id)
            if attempt.status != AttemptStatus.BAKING:
                return
            env = db.get_environment(attempt.candidate_environment)
            gate.sample(env, self.clock())
            now = self.clock()

            if gate.tripped:
                err = CircuitBreakerTripped(
                    f"{gate.consecutive_failures} consecutive failed health checks "
                    f"({gate.last.message if gate.last else 'n/a'})"
                )
                self.rollback(attempt_id, f"{type(err).__name__}: {err}")
                return

            if now >= attempt.bake_deadline:
                if gate.healthy:
                    self._promote(attempt_id)
                else:
                    err = HealthCheckTimeout(
                        f"{gate.consecutive_passes}/{self.policy.healthy_threshold} consecutive passes "
                        f"when the {self.bake_time_s:.0f}s bake window ended"
                    )
                    self.rollback(attempt_id, f"{type(err).__name__}: {err}")
                return

            self.sleep(max(0.0, min(self.policy.interval_s, attempt.bake_deadline - now)))

    def _promote(self, attempt_id: str) -> None:
        with self._lock:
            attempt = self.get_attempt(attempt_id)
            if attempt.status != AttemptStatus.BAKING:
                return
            try:
                ack = self.router.swap(attempt.service, attempt.candidate_environment)
            except SwapConflict as e:
                self.rollback(attempt_id, f"SwapConflict: {e}")
                return

            now = self.clock()
            env = db.get_environment(attempt.candidate_environment)
            env.state = EnvironmentState.PRODUCTION
            db.save_environment(env)
            if ack.previous_environment:
                old = db.get_environment(ack.previous_environment)
                old.state = EnvironmentState.DRAINING
                db.save_environment(old)
            attempt.status = AttemptStatus.PROMOTED
            attempt.updated_at = now
            attempt.finished_at = now
            db.update_attempt(attempt)
            self._cancel.pop(attempt_id, None)

        db.log_event(
            "INFO",
            f"Deployment {attempt_id} PROMOTED: production now {env.id}",
            service_name=attempt.service,
            revision=attempt.revision_id,
        )
        self.notify(*deployment_alert(attempt.service, attempt_id, "PROMOTED", f"production now {env.id}"))
        if ack.previous_environment:
            self.spawn(self._drain, attempt.service, ack.previous_environment)

    def _drain(self, service: str, env_id: str) -> None:
        """Keep the superseded environment up for the grace period, then retire it."""
        self.sleep(self.drain_grace_s)
        with self._lock:
            env = db.get_environment(env_id)
            if env is None or env.state != EnvironmentState.DRAINING:
                return
            if self.router.state(service).test_environment == env_id:
                self.router.release_test(service)
            self.router.clear_targets(env.target_group)
            tasks = list(env.tasks)
            env.state = EnvironmentState.TERMINATED
            env.tasks = []
            db.save_environment(env)

        errors = self.launcher.teardown(tasks)
        if errors:
            db.log_event("ERROR", f"Drain of {env_id} incomplete (not retried): {'; '.join(errors)}", service_name=service)
        db.log_event("INFO", f"Environment {env_id} drained and terminated", service_name=service)
