from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("BGD_DB_PATH", "bgd.db")
    poll_interval_s: int = _env_int("BGD_POLL_INTERVAL_S", 2)
    docker_network: str = os.getenv("BGD_DOCKER_NETWORK", "bgd")
    gateway_timeout_s: int = _env_int("BGD_GATEWAY_TIMEOUT_S", 10)

    # Control-plane API auth
    admin_user: str = os.getenv("BGD_ADMIN_USER", "admin")
    admin_password: str = os.getenv("BGD_ADMIN_PASSWORD", "change-me")

    # Deployment policy
    bake_time_s: float = _env_float("BGD_BAKE_TIME_S", 180.0)
    drain_grace_s: float = _env_float("BGD_DRAIN_GRACE_S", 30.0)
    start_timeout_s: float = _env_float("BGD_START_TIMEOUT_S", 300.0)
    desired_count: int = _env_int("BGD_DESIRED_COUNT", 2)
    task_cpu: int = _env_int("BGD_TASK_CPU", 256)
    task_memory_mib: int = _env_int("BGD_TASK_MEMORY_MIB", 512)

    # Health policy (interval, timeout, retries, start period) + circuit breaker
    health_interval_s: float = _env_float("BGD_HEALTH_INTERVAL_S", 30.0)
    health_timeout_s: float = _env_float("BGD_HEALTH_TIMEOUT_S", 5.0)
    health_healthy_threshold: int = _env_int("BGD_HEALTH_HEALTHY_THRESHOLD", 3)
    health_start_period_s: float = _env_float("BGD_HEALTH_START_PERIOD_S", 0.0)
    health_failure_threshold: int = _env_int("BGD_HEALTH_FAILURE_THRESHOLD", 3)

    # Traffic bindings
    production_port: int = _env_int("BGD_PRODUCTION_PORT", 80)
    test_port: int = _env_int("BGD_TEST_PORT", 10080)

    # Network namespace holder started first in every task
    pause_image: str = os.getenv("BGD_PAUSE_IMAGE", "registry.k8s.io/pause:3.9")

    # Sidecars
    log_router_image: str = os.getenv(
        "BGD_LOG_ROUTER_IMAGE", "public.ecr.aws/aws-observability/aws-for-fluent-bit:stable"
    )
    collector_image: str = os.getenv(
        "BGD_COLLECTOR_IMAGE", "public.ecr.aws/aws-observability/aws-otel-collector:latest"
    )
    instrumentation_image: str = os.getenv(
        "BGD_INSTRUMENTATION_IMAGE", "public.ecr.aws/aws-observability/adot-autoinstrumentation-node:latest"
    )
    log_destination: str = os.getenv("BGD_LOG_DESTINATION", "log-delivery-stream")
    collector_endpoint: str = os.getenv("BGD_COLLECTOR_ENDPOINT", "http://localhost:4317")
    collector_protocol: str = os.getenv("BGD_COLLECTOR_PROTOCOL", "grpc")
    traces_sampler: str = os.getenv("BGD_TRACES_SAMPLER", "parentbased_traceidratio")
    traces_sampler_arg: str = os.getenv("BGD_TRACES_SAMPLER_ARG", "0.05")
    propagators: str = os.getenv("BGD_PROPAGATORS", "tracecontext,baggage,xray")
    instrumentation_mount_path: str = os.getenv("BGD_INSTRUMENTATION_MOUNT_PATH", "/otel-auto-instrumentation")
    instrumentation_loader_env: str = os.getenv("BGD_INSTRUMENTATION_LOADER_ENV", "NODE_OPTIONS")
    instrumentation_loader_value: str = os.getenv(
        "BGD_INSTRUMENTATION_LOADER_VALUE", "--require /otel-auto-instrumentation/autoinstrumentation.js"
    )

    # Email alerting (optional)
    enable_email: bool = _env_bool("BGD_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("BGD_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("BGD_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("BGD_SMTP_USER")
    smtp_password: str | None = os.getenv("BGD_SMTP_PASSWORD")
    email_from: str | None = os.getenv("BGD_EMAIL_FROM")
    email_to: str | None = os.getenv("BGD_EMAIL_TO")

    # Safety knobs
    # Listener gateway only forwards to endpoints on the docker network unless enabled.
    allow_external_targets: bool = _env_bool("BGD_ALLOW_EXTERNAL_TARGETS", False)


settings = Settings()
