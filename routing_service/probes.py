"""
Existence probes for resources the stack may either import or create.

A CDK import such as ``Repository.from_repository_name`` never fails while
the stack is being built; a missing resource only surfaces later, when
CloudFormation deploys.  So existence is checked up front with explicit
boto3 queries and the answer is turned into a provisioning plan:

  - FOUND      ->  import the existing resource by name
  - MANAGED    ->  keep defining it (the live stack already owns it)
  - NOT_FOUND  ->  create it with the configured name and RETAIN policy

Lookup errors other than a definite "not found" are raised, never treated
as absence.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from routing_service.config import DeploymentConfig

logger = logging.getLogger("routing_service.probes")

STACK_NAME_TAG = "aws:cloudformation:stack-name"
LOG_RETENTION_DAYS = 7

REPOSITORY_TYPE = "AWS::ECR::Repository"
LOG_GROUP_TYPE = "AWS::Logs::LogGroup"
ORPHANING_STACK_STATES = ("ROLLBACK_COMPLETE", "DELETE_COMPLETE", "DELETE_IN_PROGRESS")


class ResolutionError(RuntimeError):
    """A named resource could not be resolved and must not be created."""


class CreationConflictError(RuntimeError):
    """Creating a resource collided with an existing, unmanaged resource."""


class Existence(enum.Enum):
    FOUND = "found"
    MANAGED = "managed"
    NOT_FOUND = "not_found"


class Action(enum.Enum):
    IMPORT = "import"
    CREATE = "create"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class ResourceProbe:
    """Explicit existence queries against live infrastructure."""

    def __init__(self, session, stack_name: str):
        self._session = session
        self.stack_name = stack_name
        self._clients: Dict[str, Any] = {}

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._session.client(service)
        return self._clients[service]

    def _ownership(self, tags: Mapping[str, str], resource_type: str, physical_id: str) -> Existence:
        if tags.get(STACK_NAME_TAG) != self.stack_name:
            return Existence.FOUND
        # the tag survives a rolled-back or deleted stack; only the live stack decides
        if self._stack_owns(resource_type, physical_id):
            return Existence.MANAGED
        logger.warning(
            "%s %s is tagged for %s but the stack no longer owns it; importing it",
            resource_type, physical_id, self.stack_name,
        )
        return Existence.FOUND

    def _stack_owns(self, resource_type: str, physical_id: str) -> bool:
        cfn = self._client("cloudformation")
        try:
            stack = cfn.describe_stacks(StackName=self.stack_name)["Stacks"][0]
        except ClientError as e:
            if _error_code(e) == "ValidationError" and "does not exist" in str(e):
                return False
            raise ResolutionError(f"cannot describe stack {self.stack_name!r}: {e}") from e
        except BotoCoreError as e:
            raise ResolutionError(f"cannot describe stack {self.stack_name!r}: {e}") from e

        # a ROLLBACK_COMPLETE stack is deleted and recreated on the next deploy
        if stack["StackStatus"] in ORPHANING_STACK_STATES:
            return False

        try:
            paginator = cfn.get_paginator("list_stack_resources")
            for page in paginator.paginate(StackName=self.stack_name):
                for summary in page.get("StackResourceSummaries", []):
                    if (
                        summary["ResourceType"] == resource_type
                        and summary.get("PhysicalResourceId") == physical_id
                        and not summary["ResourceStatus"].startswith("DELETE_")
                    ):
                        return True
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(f"cannot list resources of stack {self.stack_name!r}: {e}") from e
        return False

    def repository(self, name: str) -> Existence:
        ecr = self._client("ecr")
        try:
            resp = ecr.describe_repositories(repositoryNames=[name])
        except ClientError as e:
            if _error_code(e) == "RepositoryNotFoundException":
                logger.info("Repository %s not found", name)
                return Existence.NOT_FOUND
            raise ResolutionError(f"repository lookup for {name!r} failed: {e}") from e
        except BotoCoreError as e:
            raise ResolutionError(f"repository lookup for {name!r} failed: {e}") from e

        arn = resp["repositories"][0]["repositoryArn"]
        try:
            tags = ecr.list_tags_for_resource(resourceArn=arn).get("tags", [])
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(f"cannot read tags of repository {name!r}: {e}") from e

        state = self._ownership({t["Key"]: t["Value"] for t in tags}, REPOSITORY_TYPE, name)
        logger.info("Repository %s %s", name, state.value)
        return state

    def log_group(self, name: str) -> Existence:
        logs = self._client("logs")
        found: Optional[dict] = None
        try:
            paginator = logs.get_paginator("describe_log_groups")
            for page in paginator.paginate(logGroupNamePrefix=name):
                for group in page.get("logGroups", []):
                    if group["logGroupName"] == name:
                        found = group
                        break
                if found:
                    break
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(f"log group lookup for {name!r} failed: {e}") from e

        if found is None:
            logger.info("Log group %s not found", name)
            return Existence.NOT_FOUND

        retention = found.get("retentionInDays")
        if retention != LOG_RETENTION_DAYS:
            logger.warning(
                "Log group %s exists with retention %s days (expected %d); imported groups are left as is",
                name, retention, LOG_RETENTION_DAYS,
            )

        try:
            tags = logs.list_tags_log_group(logGroupName=name).get("tags", {})
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(f"cannot read tags of log group {name!r}: {e}") from e

        state = self._ownership(tags, LOG_GROUP_TYPE, name)
        logger.info("Log group %s %s", name, state.value)
        return state


def decide(kind: str, name: str, existence: Existence, create_missing: bool = True) -> Action:
    if existence is Existence.FOUND:
        return Action.IMPORT
    if existence is Existence.MANAGED:
        return Action.CREATE
    if not create_missing:
        raise ResolutionError(f"{kind} {name!r} does not exist and creation is disabled")
    return Action.CREATE


@dataclass(frozen=True)
class ProvisioningPlan:
    repository: Action
    log_group: Action

    @classmethod
    def from_context(cls, context: Mapping[str, Optional[str]]) -> Optional["ProvisioningPlan"]:
        """
        Plan pinned through CDK context (``-c repository=import -c log_group=create``).
        Returns None unless both keys are set.
        """
        repository = context.get("repository")
        log_group = context.get("log_group")
        if repository is None and log_group is None:
            return None
        if repository is None or log_group is None:
            raise ResolutionError("context must pin both 'repository' and 'log_group'")
        try:
            return cls(repository=Action(repository), log_group=Action(log_group))
        except ValueError as e:
            raise ResolutionError(f"invalid provisioning context: {e}") from e

    def as_context(self) -> Dict[str, str]:
        return {"repository": self.repository.value, "log_group": self.log_group.value}


def resolve_plan(config: DeploymentConfig, probe: ResourceProbe) -> ProvisioningPlan:
    repository = decide(
        "repository", config.repository_name,
        probe.repository(config.repository_name), config.create_missing,
    )
    log_group = decide(
        "log group", config.log_group_name,
        probe.log_group(config.log_group_name), config.create_missing,
    )
    plan = ProvisioningPlan(repository=repository, log_group=log_group)
    logger.info("Provisioning plan: %s", plan.as_context())
    return plan
