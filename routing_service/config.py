"""
Deployment configuration.

One explicit record describes an environment (account, network, domain,
sizing, storage) so the same stack definition deploys anywhere without
editing source.  Values come from ROUTING_* environment variables; the
defaults below are the reference deployment.
"""

from __future__ import annotations

import os
import re
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

ENV_PREFIX = "ROUTING_"
EXTRA_ENV_PREFIX = "ROUTING_EXTRA_ENV_"

# Fargate task sizes: (cpu units, memory MiB)
SIZING_TIERS: Dict[str, Tuple[int, int]] = {
    "small": (1024, 2048),
    "standard": (2048, 8192),
    "large": (4096, 16384),
}

# memory values (MiB) Fargate accepts for each cpu value
FARGATE_MEMORY: Dict[int, Tuple[int, ...]] = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4096 + 1, 1024)),
    1024: tuple(range(2048, 8192 + 1, 1024)),
    2048: tuple(range(4096, 16384 + 1, 1024)),
    4096: tuple(range(8192, 30720 + 1, 1024)),
    8192: tuple(range(16384, 61440 + 1, 4096)),
    16384: tuple(range(32768, 122880 + 1, 8192)),
}

ECR_NAME_RE = re.compile(r"^(?:[a-z0-9]+(?:[._-][a-z0-9]+)*/)*[a-z0-9]+(?:[._-][a-z0-9]+)*$")

REQUIRED = {
    "account": "ROUTING_ACCOUNT",
    "region": "ROUTING_REGION",
    "environment_name": "ROUTING_ENVIRONMENT",
    "vpc_name_tag": "ROUTING_VPC_NAME",
    "hosted_zone_domain": "ROUTING_HOSTED_ZONE",
    "record_name": "ROUTING_RECORD_NAME",
    "data_bucket": "ROUTING_DATA_BUCKET",
    "data_key": "ROUTING_DATA_KEY",
}

# exactly one of these names the TLS certificate
CERTIFICATE_SOURCES = {
    "certificate_secret_arn": "ROUTING_CERT_SECRET_ARN",
    "certificate_arn": "ROUTING_CERT_ARN",
}

OPTIONAL = {
    **CERTIFICATE_SOURCES,
    "repository_name": "ROUTING_REPOSITORY",
    "image_tag": "ROUTING_IMAGE_TAG",
    "log_group_name": "ROUTING_LOG_GROUP",
    "log_stream_prefix": "ROUTING_LOG_STREAM_PREFIX",
    "container_port": "ROUTING_CONTAINER_PORT",
    "health_path": "ROUTING_HEALTH_PATH",
    "health_interval_s": "ROUTING_HEALTH_INTERVAL",
    "health_timeout_s": "ROUTING_HEALTH_TIMEOUT",
    "health_retries": "ROUTING_HEALTH_RETRIES",
    "startup_grace_s": "ROUTING_STARTUP_GRACE",
    "target_health_interval_s": "ROUTING_TARGET_HEALTH_INTERVAL",
    "desired_count": "ROUTING_DESIRED_COUNT",
    "min_healthy_percent": "ROUTING_MIN_HEALTHY_PERCENT",
    "max_healthy_percent": "ROUTING_MAX_HEALTHY_PERCENT",
    "sizing_tier": "ROUTING_SIZING_TIER",
    "cpu": "ROUTING_CPU",
    "memory_mib": "ROUTING_MEMORY_MIB",
    "persistent_storage": "ROUTING_PERSISTENT_STORAGE",
    "access_point_path": "ROUTING_ACCESS_POINT_PATH",
    "posix_uid": "ROUTING_POSIX_UID",
    "posix_gid": "ROUTING_POSIX_GID",
    "posix_permissions": "ROUTING_POSIX_PERMISSIONS",
    "mount_path": "ROUTING_MOUNT_PATH",
    "discovery_name": "ROUTING_DISCOVERY_NAME",
    "discovery_namespace": "ROUTING_DISCOVERY_NAMESPACE",
    "discovery_ttl_s": "ROUTING_DISCOVERY_TTL",
    "nofile_soft_limit": "ROUTING_NOFILE_SOFT",
    "nofile_hard_limit": "ROUTING_NOFILE_HARD",
    "command": "ROUTING_COMMAND",
    "create_missing": "ROUTING_CREATE_MISSING",
}


class ConfigError(ValueError):
    """Raised when the deployment configuration is missing or inconsistent."""


class DeploymentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # target infrastructure
    account: str
    region: str
    environment_name: str = Field(min_length=1)
    vpc_name_tag: str = Field(min_length=1)

    # edge / dns
    hosted_zone_domain: str
    record_name: str
    certificate_secret_arn: Optional[str] = None
    certificate_arn: Optional[str] = None

    # input map extract
    data_bucket: str = Field(min_length=3)
    data_key: str = Field(min_length=1)

    # image and logs
    repository_name: str = "graphhopper"
    image_tag: str = "latest"
    log_group_name: str = "/ecs/graphhopper"
    log_stream_prefix: str = "graphhopper-ecs"
    command: str = "/graphhopper/graphhopper.sh"

    # container contract
    container_port: int = Field(default=8989, ge=1, le=65535)
    health_path: str = "/health"
    health_interval_s: int = Field(default=30, ge=5, le=300)
    health_timeout_s: int = Field(default=5, ge=2, le=120)
    health_retries: int = Field(default=3, ge=1, le=10)
    startup_grace_s: int = Field(default=600, ge=0)
    target_health_interval_s: int = Field(default=60, ge=5, le=300)
    nofile_soft_limit: int = Field(default=65536, ge=1)
    nofile_hard_limit: int = Field(default=1048576, ge=1)
    extra_environment: Dict[str, str] = Field(default_factory=dict)

    # service runtime
    desired_count: int = Field(default=1, ge=0)
    min_healthy_percent: int = Field(default=100, ge=0)
    max_healthy_percent: int = Field(default=200, ge=100)
    sizing_tier: str = "standard"
    cpu: Optional[int] = None
    memory_mib: Optional[int] = None

    # persistent store
    persistent_storage: bool = True
    access_point_path: str = "/graphhopper"
    posix_uid: int = Field(default=1000, ge=0)
    posix_gid: int = Field(default=1000, ge=0)
    posix_permissions: str = "755"
    mount_path: str = "/data"

    # service discovery
    discovery_name: str = "graphhopper"
    discovery_namespace: Optional[str] = None
    discovery_ttl_s: int = Field(default=60, ge=0)

    create_missing: bool = True

    @model_validator(mode="after")
    def _check_consistency(self) -> "DeploymentConfig":
        if bool(self.certificate_arn) == bool(self.certificate_secret_arn):
            raise ValueError("set exactly one of certificate_arn and certificate_secret_arn")
        if not ECR_NAME_RE.match(self.repository_name):
            raise ValueError(f"invalid repository name: {self.repository_name!r}")
        if self.sizing_tier not in SIZING_TIERS:
            raise ValueError(
                f"unknown sizing tier {self.sizing_tier!r}, expected one of {sorted(SIZING_TIERS)}"
            )
        cpu, memory = self.task_size
        if cpu not in FARGATE_MEMORY:
            raise ValueError(f"unsupported Fargate cpu value: {cpu}")
        allowed = FARGATE_MEMORY[cpu]
        if memory not in allowed:
            raise ValueError(f"memory {memory} MiB not supported for cpu {cpu}, expected one of {list(allowed)}")
        if self.container_port in (80, 443):
            raise ValueError("container port must not collide with the edge listener ports")
        if not self.health_path.startswith("/"):
            raise ValueError("health path must start with '/'")
        if self.health_timeout_s >= self.health_interval_s:
            raise ValueError("health check timeout must be shorter than its interval")
        if self.health_timeout_s >= self.target_health_interval_s:
            raise ValueError("health check timeout must be shorter than the target health interval")
        if self.min_healthy_percent > self.max_healthy_percent:
            raise ValueError("min healthy percent exceeds max healthy percent")
        if (
            self.desired_count > 0
            and self.min_healthy_percent >= 100
            and self.max_healthy_percent <= 100
        ):
            raise ValueError("rolling replacement needs max healthy percent above 100")
        if self.nofile_soft_limit > self.nofile_hard_limit:
            raise ValueError("file descriptor soft limit exceeds hard limit")
        if not self.access_point_path.startswith("/") or not self.mount_path.startswith("/"):
            raise ValueError("access point and mount paths must be absolute")
        if not re.fullmatch(r"[0-7]{3,4}", self.posix_permissions):
            raise ValueError(f"invalid POSIX permissions: {self.posix_permissions!r}")
        zone = self.hosted_zone_domain.rstrip(".").lower()
        fqdn = self.fqdn
        if fqdn != zone and not fqdn.endswith("." + zone):
            raise ValueError(f"record {fqdn!r} is outside hosted zone {zone!r}")
        clash = set(self.extra_environment) & set(self._base_environment())
        if clash:
            raise ValueError(f"extra environment overrides reserved keys: {sorted(clash)}")
        return self

    # ------------------------------------------------------------------
    # derived values
    # ------------------------------------------------------------------

    @property
    def task_size(self) -> Tuple[int, int]:
        cpu, memory = SIZING_TIERS.get(self.sizing_tier, SIZING_TIERS["standard"])
        return (self.cpu or cpu, self.memory_mib or memory)

    @property
    def fqdn(self) -> str:
        # same rules Route 53 record names follow in CDK: a trailing dot
        # marks an absolute name, anything else is relative to the zone
        zone = self.hosted_zone_domain.rstrip(".").lower()
        record = self.record_name.lower()
        if record.endswith("."):
            return record.rstrip(".")
        if not record or record == zone or record.endswith("." + zone):
            return record or zone
        return f"{record}.{zone}"

    @property
    def namespace(self) -> str:
        return self.discovery_namespace or f"{self.environment_name}.internal"

    @property
    def stack_name(self) -> str:
        return f"RoutingService-{self.environment_name}"

    @property
    def health_check_command(self) -> List[str]:
        return [
            "CMD-SHELL",
            f"curl -f http://localhost:{self.container_port}{self.health_path} || exit 1",
        ]

    def _base_environment(self) -> Dict[str, str]:
        env = {
            "ENV": self.environment_name,
            "DATA_BUCKET": self.data_bucket,
            "DATA_KEY": self.data_key,
            "PORT": str(self.container_port),
        }
        if self.persistent_storage:
            env["DATA_DIR"] = self.mount_path
        return env

    @property
    def environment(self) -> Dict[str, str]:
        """Container environment; keys are unique by construction."""
        env = self._base_environment()
        env.update(self.extra_environment)
        return env


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"not a boolean: {raw!r}")


def load_config(environ: Optional[Mapping[str, str]] = None) -> DeploymentConfig:
    """
    Build the deployment config from ROUTING_* variables.

    All missing required variables are reported together.  Pydantic
    validation failures are re-raised as ConfigError.
    """
    environ = os.environ if environ is None else environ

    missing = [var for var in REQUIRED.values() if not environ.get(var, "").strip()]
    if not any(environ.get(var, "").strip() for var in CERTIFICATE_SOURCES.values()):
        missing.append(" or ".join(CERTIFICATE_SOURCES.values()))
    if missing:
        raise ConfigError("missing required configuration: " + ", ".join(missing))

    values: Dict[str, object] = {
        field: environ[var].strip() for field, var in REQUIRED.items()
    }
    for field, var in OPTIONAL.items():
        raw = environ.get(var)
        if raw is None or not raw.strip():
            continue
        if field in ("persistent_storage", "create_missing"):
            values[field] = _parse_bool(raw)
        else:
            values[field] = raw.strip()

    values["extra_environment"] = {
        key[len(EXTRA_ENV_PREFIX):]: value
        for key, value in environ.items()
        if key.startswith(EXTRA_ENV_PREFIX) and len(key) > len(EXTRA_ENV_PREFIX)
    }

    try:
        return DeploymentConfig(**values)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
