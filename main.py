from __future__ import annotations

import secrets
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from bgd import db
from bgd.api_models import AbortRequest, DeployRequest, RegisterServiceRequest
from bgd.controller import DeploymentController
from bgd.docker_ops import DockerBackend
from bgd.gateway import SwapConflict, TrafficRouter
from bgd.graph import ContainerNode, Dependency, Edge, HealthCheckSpec, InvalidRevision, MountPoint
from bgd.launcher import TaskLauncher
from bgd.listener import ListenerPool
from bgd.revision import CacheConfig, DatabaseConfig, DataLayerConfig, Revision, build_revision
from bgd.secret_store import EnvSecretStore
from bgd.settings import settings
from bgd.sidecars import ConfigDocument, FeatureFlags, TelemetryDocuments

security = HTTPBasic()


def build_controller() -> DeploymentController:
    router = TrafficRouter()
    launcher = TaskLauncher(
        DockerBackend(),
        EnvSecretStore(),
        poll_interval_s=settings.poll_interval_s,
        start_timeout_s=settings.start_timeout_s,
    )
    return DeploymentController(router, launcher)


def revision_from_request(service: str, req: DeployRequest) -> Revision:
    containers = [
        ContainerNode(
            name=c.name,
            image=c.image,
            essential=c.essential,
            depends_on=tuple(Dependency(d.container, d.condition) for d in c.depends_on),
            health_check=HealthCheckSpec(
                command=tuple(c.health_check.command),
                interval_s=c.health_check.interval_s,
                timeout_s=c.health_check.timeout_s,
                retries=c.health_check.retries,
                start_period_s=c.health_check.start_period_s,
            )
            if c.health_check
            else None,
            mount_points=tuple(MountPoint(m.source_volume, m.container_path, m.read_only) for m in c.mount_points),
            environment=tuple(c.environment.items()),
            secrets=tuple(c.secrets.items()),
            command=tuple(c.command),
        )
        for c in req.containers
    ]
    documents = TelemetryDocuments(
        log_router=ConfigDocument(req.log_router_config.reference, req.log_router_config.content)
        if req.log_router_config
        else None,
        collector=ConfigDocument(req.collector_config.reference, req.collector_config.content)
        if req.collector_config
        else None,
    )
    data_layer = DataLayerConfig(
        database=DatabaseConfig(**req.database.model_dump()) if req.database else None,
        cache=CacheConfig(**req.cache.model_dump()) if req.cache else None,
    )
    return build_revision(
        service=service,
        containers=containers,
        app_container=req.app_container,
        port=req.port,
        health_path=req.health_path,
        flags=FeatureFlags(**req.flags.model_dump()),
        documents=documents,
        data_layer=data_layer,
        edges=[Edge(e.predecessor, e.successor, e.condition) for e in req.edges],
        cpu=req.cpu,
        memory_mib=req.memory_mib,
        desired_count=req.desired_count,
    )


def create_app(
    controller: DeploymentController | None = None,
    listeners: ListenerPool | None = None,
    recover: bool = True,
) -> FastAPI:
    ctl = controller or build_controller()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if recover:
            aborted = ctl.recover()
            if aborted:
                db.log_event("WARN", f"Aborted {len(aborted)} deployment(s) left in flight by a previous run")
        if listeners is not None:
            for svc in db.list_services():
                listeners.ensure(svc.name, svc.production_port, svc.test_port)
        yield
        if listeners is not None:
            listeners.shutdown()

    app = FastAPI(title="Blue/Green Deployer", lifespan=lifespan)
    app.state.controller = ctl
    app.state.listeners = listeners

    def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        if not (
            secrets.compare_digest(credentials.username, settings.admin_user)
            and secrets.compare_digest(credentials.password, settings.admin_password)
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/services")
    def list_services(user: str = Depends(require_admin)) -> list[dict]:
        out = []
        for svc in db.list_services():
            out.append(
                {
                    "name": svc.name,
                    "production_port": svc.production_port,
                    "test_port": svc.test_port,
                    "traffic": ctl.router.state(svc.name).to_dict(),
                    "environments": [e.to_dict() for e in ctl.environments(svc.name)],
                }
            )
        return out

    @app.post("/services", status_code=status.HTTP_201_CREATED)
    def register_service(req: RegisterServiceRequest, user: str = Depends(require_admin)) -> dict:
        try:
            state = ctl.register_service(req.name, req.production_port, req.test_port)
        except InvalidRevision as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        svc = db.get_service(req.name)
        if listeners is not None:
            listeners.ensure(svc.name, svc.production_port, svc.test_port)
        db.log_event("INFO", f"Service registered by {user}", service_name=req.name)
        return {"name": svc.name, "production_port": svc.production_port, "test_port": svc.test_port, "traffic": state.to_dict()}

    @app.post("/services/{service}/deployments", status_code=status.HTTP_202_ACCEPTED)
    def submit_deployment(service: str, req: DeployRequest, user: str = Depends(require_admin)) -> dict:
        if db.get_service(service) is None:
            raise HTTPException(status_code=404, detail=f"unknown service '{service}'")
        try:
            revision = revision_from_request(service, req)
            attempt = ctl.submit(service, revision)
        except InvalidRevision as e:
            raise HTTPException(status_code=422, detail=str(e))
        except SwapConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {**attempt.to_dict(), "sidecar_set": revision.sidecar_set.value, "start_order": revision.graph.names}

    @app.get("/services/{service}/deployments")
    def list_deployments(service: str, user: str = Depends(require_admin)) -> list[dict]:
        if db.get_service(service) is None:
            raise HTTPException(status_code=404, detail=f"unknown service '{service}'")
        return [a.to_dict() for a in ctl.list_attempts(service)]

    @app.get("/deployments/{attempt_id}")
    def get_deployment(attempt_id: str, user: str = Depends(require_admin)) -> dict:
        try:
            attempt = ctl.get_attempt(attempt_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="unknown deployment")
        return {**attempt.to_dict(), "revision": db.get_revision(attempt.revision_id)}

    @app.post("/deployments/{attempt_id}/abort")
    def abort_deployment(attempt_id: str, req: AbortRequest | None = None, user: str = Depends(require_admin)) -> dict:
        reason = req.reason if req else "Aborted by operator"
        try:
            attempt = ctl.abort(attempt_id, f"{reason} ({user})")
        except KeyError:
            raise HTTPException(status_code=404, detail="unknown deployment")
        return attempt.to_dict()

    @app.get("/services/{service}/traffic")
    def traffic(service: str, user: str = Depends(require_admin)) -> dict:
        try:
            state = ctl.router.state(service)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"unknown service '{service}'")
        production, test = ctl.router.bindings(service)
        return {
            **state.to_dict(),
            "bindings": [
                {"name": b.name, "listener_port": b.listener_port, "rule_id": b.rule_id, "target_group": b.target_group}
                for b in (production, test)
            ],
        }

    @app.get("/events")
    def events(
        limit: int = Query(100, ge=1, le=1000), service: str | None = None, user: str = Depends(require_admin)
    ) -> list[dict]:
        return db.latest_events(limit, service)

    return app


# `uvicorn main:app` serves the control plane together with the traffic listeners.
controller = build_controller()
app = create_app(controller, listeners=ListenerPool(controller.router))
