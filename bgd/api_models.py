from __future__ import annotations

from pydantic import BaseModel, Field

from .graph import Condition


class RegisterServiceRequest(BaseModel):
    name: str = Field(..., description="Logical service name (dns-safe)")
    production_port: int | None = Field(None, ge=1, le=65535, description="Production listener port")
    test_port: int | None = Field(None, ge=1, le=65535, description="Test listener port used while baking")


class HealthCheckModel(BaseModel):
    command: list[str] = Field(..., min_length=1, description="Container health check command")
    interval_s: int = Field(30, ge=1, le=300)
    timeout_s: int = Field(5, ge=1, le=120)
    retries: int = Field(3, ge=1, le=10)
    start_period_s: int = Field(0, ge=0, le=300)


class DependencyModel(BaseModel):
    container: str
    condition: Condition = Condition.START


class MountModel(BaseModel):
    source_volume: str
    container_path: str
    read_only: bool = False


class ContainerModel(BaseModel):
    name: str
    image: str = Field(..., description="Image reference (name:tag)")
    essential: bool = True
    depends_on: list[DependencyModel] = Field(default_factory=list)
    health_check: HealthCheckModel | None = None
    mount_points: list[MountModel] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict, description="env name -> secret reference")
    command: list[str] = Field(default_factory=list)


class EdgeModel(BaseModel):
    predecessor: str
    successor: str
    condition: Condition = Condition.START


class FeatureFlagsModel(BaseModel):
    enable_log_shipping: bool = False
    enable_metrics_collection: bool = False
    enable_tracing: bool = False


class ConfigDocumentModel(BaseModel):
    reference: str = Field(..., description="Parameter-store reference handed to the sidecar")
    content: str = Field(..., description="Document published under the reference (only checked for non-empty)")


class DatabaseModel(BaseModel):
    host: str
    port: int = Field(5432, ge=1, le=65535)
    name: str = "appdb"
    credentials_secret: str | None = None
    ssl: bool = False


class CacheModel(BaseModel):
    endpoint: str
    port: int = Field(6379, ge=1, le=65535)
    tls: bool = True


class DeployRequest(BaseModel):
    app_container: str = Field(..., description="Name of the container that serves traffic")
    port: int = Field(..., ge=1, le=65535, description="Container port the app listens on")
    health_path: str = "/health"
    containers: list[ContainerModel] = Field(..., min_length=1)
    edges: list[EdgeModel] = Field(default_factory=list)
    flags: FeatureFlagsModel = Field(default_factory=FeatureFlagsModel)
    log_router_config: ConfigDocumentModel | None = None
    collector_config: ConfigDocumentModel | None = None
    database: DatabaseModel | None = None
    cache: CacheModel | None = None
    cpu: int | None = Field(None, ge=128, le=16384)
    memory_mib: int | None = Field(None, ge=128, le=122880)
    desired_count: int | None = Field(None, ge=1, le=50)


class AbortRequest(BaseModel):
    reason: str = "Aborted by operator"
