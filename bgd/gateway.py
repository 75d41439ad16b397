from __future__ import annotations

import time
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable

from . import db
from .runtime import TrafficState


class SwapConflict(Exception):
    pass


class NoHealthyBackends(Exception):
    pass


PRODUCTION = "production"
TEST = "test"


@dataclass(frozen=True)
class Binding:
    """A (listener port, rule, target group) triple; only the target group ever changes."""

    name: str
    listener_port: int
    rule_id: str
    target_group: str | None


@dataclass(frozen=True)
class SwapAck:
    service: str
    previous_environment: str | None
    production_environment: str
    swapped_at: float
    changed: bool = True


@dataclass
class _ServiceRoutes:
    production: Binding
    test: Binding
    environments: dict[str, str]  # environment id -> target group
    state: TrafficState


class TrafficRouter:
    """Owns the production and test bindings of every service and their TrafficState."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = Lock()
        self._swapping: set[str] = set()
        self._routes: dict[str, _ServiceRoutes] = {}
        self._members: dict[str, list[str]] = {}  # target group -> endpoints
        self._rr_index: dict[str, int] = {}

    def register(self, service: str, production_port: int, test_port: int, environments: dict[str, str]) -> TrafficState:
        """Create (or reload from the database) the bindings of a service."""
        if production_port == test_port:
            raise ValueError("production and test listeners need distinct ports")
        if len(set(environments.values())) != len(environments):
            raise ValueError("environments must map to disjoint target groups")
        state = db.get_traffic(service)
        if state is None:
            state = TrafficState(service=service, production_environment=None, test_environment=None)
            db.save_traffic(state)

        def tg(env_id: str | None) -> str | None:
            return environments[env_id] if env_id else None

        routes = _ServiceRoutes(
            production=Binding(PRODUCTION, production_port, f"{service}-rule-{PRODUCTION}", tg(state.production_environment)),
            test=Binding(TEST, test_port, f"{service}-rule-{TEST}", tg(state.test_environment)),
            environments=dict(environments),
            state=state,
        )
        with self._lock:
            self._routes[service] = routes
        return state

    def _routes_for(self, service: str) -> _ServiceRoutes:
        try:
            return self._routes[service]
        except KeyError:
            raise KeyError(f"unknown service '{service}'") from None

    def state(self, service: str) -> TrafficState:
        with self._lock:
            return self._routes_for(service).state

    def bindings(self, service: str) -> tuple[Binding, Binding]:
        with self._lock:
            r = self._routes_for(service)
            return r.production, r.test

    def resolve(self, service: str, binding: str = PRODUCTION) -> str | None:
        """Target group the binding currently forwards to (None when unbound)."""
        with self._lock:
            r = self._routes_for(service)
            return r.production.target_group if binding == PRODUCTION else r.test.target_group

    def swap(self, service: str, new_production_environment: str) -> SwapAck:
        """Repoint the production rule at ``new_production_environment``.

        Only the rule's target group changes. The test rule is rebound to the
        previous production target group in the same critical section, so the
        two bindings never point at the same group. Single-flight per service.
        """
        with self._lock:
            if service in self._swapping:
                raise SwapConflict(f"A traffic swap for '{service}' is already pending.")
            r = self._routes_for(service)
            if new_production_environment not in r.environments:
                raise KeyError(f"unknown environment '{new_production_environment}'")
            previous = r.state.production_environment
            if previous == new_production_environment:
                return SwapAck(service, previous, previous, r.state.last_swap_at or self.clock(), changed=False)
            self._swapping.add(service)

        try:
            now = self.clock()
            with self._lock:
                r.production = replace(r.production, target_group=r.environments[new_production_environment])
                r.test = replace(r.test, target_group=r.environments[previous] if previous else None)
                r.state = TrafficState(
                    service=service,
                    production_environment=new_production_environment,
                    test_environment=previous,
                    last_swap_at=now,
                )
                state = r.state
            db.save_traffic(state)
            db.log_event(
                "INFO",
                f"Production traffic swapped {previous or '(none)'} -> {new_production_environment}",
                service_name=service,
            )
            return SwapAck(service, previous, new_production_environment, now)
        finally:
            with self._lock:
                self._swapping.discard(service)

    def attach_test(self, service: str, environment: str) -> TrafficState:
        with self._lock:
            r = self._routes_for(service)
            if environment not in r.environments:
                raise KeyError(f"unknown environment '{environment}'")
            if environment == r.state.production_environment:
                raise ValueError("the test binding cannot point at the production environment")
            r.test = replace(r.test, target_group=r.environments[environment])
            r.state = replace(r.state, test_environment=environment)
            state = r.state
        db.save_traffic(state)
        return state

    def release_test(self, service: str) -> TrafficState:
        with self._lock:
            r = self._routes_for(service)
            r.test = replace(r.test, target_group=None)
            r.state = replace(r.state, test_environment=None)
            state = r.state
        db.save_traffic(state)
        return state

    def register_targets(self, target_group: str, endpoints: list[str]) -> None:
        with self._lock:
            self._members[target_group] = list(endpoints)

    def clear_targets(self, target_group: str) -> None:
        with self._lock:
            self._members.pop(target_group, None)

    def _next_index(self, key: str, n: int) -> int:
        if n <= 0:
            return 0
        i = self._rr_index.get(key, 0) % n
        self._rr_index[key] = (i + 1) % n
        return i

    def select_target(self, service: str, binding: str = PRODUCTION) -> str:
        """Pick an endpoint behind a binding, round-robin across the target group's members."""
        with self._lock:
            r = self._routes_for(service)
            tg = r.production.target_group if binding == PRODUCTION else r.test.target_group
            if tg is None:
                raise NoHealthyBackends(f"The {binding} binding of '{service}' is not bound.")
            members = self._members.get(tg, [])
            if not members:
                raise NoHealthyBackends(f"No registered targets in '{tg}'.")
            return members[self._next_index(f"{service}:{binding}:{tg}", len(members))]
