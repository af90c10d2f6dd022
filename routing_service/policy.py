"""
Identity grants and network boundaries for the routing service.

Both are plain data so they can be checked without synthesizing the stack;
the stack turns Grant into iam.PolicyStatement and SecurityEdge into
security group ingress rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from routing_service.config import DeploymentConfig

HTTP_PORT = 80
HTTPS_PORT = 443
NFS_PORT = 2049

INTERNET = "internet"
EDGE = "edge"
SERVICE = "service"
FILE_SYSTEM = "file_system"

# authorization-token and log bootstrap calls cannot be scoped to a resource
IMAGE_PULL_BOOTSTRAP = ("ecr:GetAuthorizationToken",)
IMAGE_PULL_ACTIONS = (
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
)
LOG_WRITE_ACTIONS = ("logs:CreateLogStream", "logs:PutLogEvents")
OBJECT_READ_ACTIONS = ("s3:GetObject",)
OBJECT_LIST_ACTIONS = ("s3:ListBucket",)
FILE_SYSTEM_ACTIONS = (
    "elasticfilesystem:ClientMount",
    "elasticfilesystem:ClientWrite",
)

WILDCARD_ALLOWED = set(IMAGE_PULL_BOOTSTRAP) | set(LOG_WRITE_ACTIONS)


class PolicyViolation(RuntimeError):
    """A grant set or boundary breaks the least-privilege rules."""


@dataclass(frozen=True)
class Grant:
    actions: Tuple[str, ...]
    resources: Tuple[str, ...]
    conditions: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)


@dataclass(frozen=True)
class SecurityEdge:
    source: str
    target: str
    protocol: str
    port: int


def bucket_arn(bucket: str) -> str:
    return f"arn:aws:s3:::{bucket}"


def object_arn(bucket: str, key: str) -> str:
    return f"arn:aws:s3:::{bucket}/{key.lstrip('/')}"


def execution_grants(repository_arn: str, log_group_arn: str) -> List[Grant]:
    """Pull one image, write one log group. Nothing else."""
    return [
        Grant(actions=IMAGE_PULL_BOOTSTRAP, resources=("*",)),
        Grant(actions=IMAGE_PULL_ACTIONS, resources=(repository_arn,)),
        Grant(actions=LOG_WRITE_ACTIONS, resources=(log_group_arn,)),
    ]


def runtime_grants(
    bucket: str,
    key: str,
    file_system_arn: Optional[str] = None,
    access_point_arn: Optional[str] = None,
) -> List[Grant]:
    """Read the map extract; mount the file system through its access point when enabled."""
    prefix = key.lstrip("/")
    grants = [
        Grant(actions=OBJECT_READ_ACTIONS, resources=(object_arn(bucket, key),)),
        Grant(
            actions=OBJECT_LIST_ACTIONS,
            resources=(bucket_arn(bucket),),
            conditions={"StringEquals": {"s3:prefix": [prefix]}},
        ),
    ]
    if file_system_arn is not None:
        conditions: Dict[str, Dict[str, List[str]]] = {}
        if access_point_arn is not None:
            conditions = {"StringEquals": {"elasticfilesystem:AccessPointArn": [access_point_arn]}}
        grants.append(
            Grant(actions=FILE_SYSTEM_ACTIONS, resources=(file_system_arn,), conditions=conditions)
        )
    return grants


def _actions(grants: List[Grant]) -> List[str]:
    return [action for g in grants for action in g.actions]


def check_least_privilege(execution: List[Grant], runtime: List[Grant]) -> None:
    for action in _actions(execution):
        if action.startswith(("s3:", "elasticfilesystem:")):
            raise PolicyViolation(f"execution identity must not hold {action}")
    for action in _actions(runtime):
        if action.startswith("ecr:"):
            raise PolicyViolation(f"runtime identity must not hold {action}")
    for g in execution + runtime:
        if "*" in g.resources:
            extra = set(g.actions) - WILDCARD_ALLOWED
            if extra:
                raise PolicyViolation(f"wildcard resource granted for {sorted(extra)}")


def security_edges(config: DeploymentConfig) -> List[SecurityEdge]:
    """Every allowed (peer, protocol, port) pair; anything else is denied."""
    edges = [
        SecurityEdge(INTERNET, EDGE, "tcp", HTTP_PORT),
        SecurityEdge(INTERNET, EDGE, "tcp", HTTPS_PORT),
        SecurityEdge(EDGE, SERVICE, "tcp", config.container_port),
    ]
    if config.persistent_storage:
        edges.append(SecurityEdge(SERVICE, FILE_SYSTEM, "tcp", NFS_PORT))
    return edges


def check_exposure(edges: List[SecurityEdge]) -> None:
    seen = set()
    for edge in edges:
        if edge.source == INTERNET and edge.target != EDGE:
            raise PolicyViolation(f"{edge.target} must not be reachable from the internet")
        if edge.target == FILE_SYSTEM and (edge.source != SERVICE or edge.port != NFS_PORT):
            raise PolicyViolation(f"file system only accepts NFS from the service, not {edge}")
        if edge in seen:
            raise PolicyViolation(f"duplicate boundary rule {edge}")
        seen.add(edge)
