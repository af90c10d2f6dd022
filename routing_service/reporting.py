"""
Classify CloudFormation deployment failures.

CloudFormation does the provisioning; this only reads its stack events and
turns failed resources into the errors operators act on.  A name collision
is never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from routing_service.probes import CreationConflictError, ResolutionError

logger = logging.getLogger("routing_service.reporting")

CONFLICT_MARKERS = ("already exists", "alreadyexists")
MISSING_MARKERS = ("not found", "does not exist", "notfound")

# stack-level statuses that open a new operation; rollbacks belong to the one before
OPERATION_STARTS = (
    "CREATE_IN_PROGRESS",
    "UPDATE_IN_PROGRESS",
    "DELETE_IN_PROGRESS",
    "IMPORT_IN_PROGRESS",
)


@dataclass(frozen=True)
class ResourceFailure:
    logical_id: str
    resource_type: str
    physical_id: str
    status: str
    reason: str


def fetch_stack_events(client, stack_name: str) -> List[dict]:
    """All events of the stack, newest first."""
    events: List[dict] = []
    paginator = client.get_paginator("describe_stack_events")
    for page in paginator.paginate(StackName=stack_name):
        events.extend(page.get("StackEvents", []))
    return events


def collect_failures(events: Iterable[dict], stack_name: Optional[str] = None) -> List[ResourceFailure]:
    """
    Failed resources of the latest operation.

    Events are newest first; with `stack_name` given, collection stops at the
    stack event that started the latest operation so earlier, already
    resolved failures are not reported again.
    """
    failures = []
    for event in events:
        status = event.get("ResourceStatus", "")
        if (
            stack_name
            and event.get("LogicalResourceId") == stack_name
            and status in OPERATION_STARTS
        ):
            break
        if not status.endswith("_FAILED"):
            continue
        reason = event.get("ResourceStatusReason", "")
        # the stack itself reports the rollback, not the cause
        if stack_name and event.get("LogicalResourceId") == stack_name:
            continue
        if "Resource creation cancelled" in reason:
            continue
        failures.append(
            ResourceFailure(
                logical_id=event.get("LogicalResourceId", ""),
                resource_type=event.get("ResourceType", ""),
                physical_id=event.get("PhysicalResourceId", ""),
                status=status,
                reason=reason,
            )
        )
    return failures


def classify(failure: ResourceFailure) -> RuntimeError:
    reason = failure.reason.lower()
    detail = f"{failure.logical_id} ({failure.resource_type}): {failure.reason}"
    if any(marker in reason for marker in CONFLICT_MARKERS):
        return CreationConflictError(detail)
    if any(marker in reason for marker in MISSING_MARKERS):
        return ResolutionError(detail)
    return RuntimeError(detail)


def raise_for_failures(events: Iterable[dict], stack_name: Optional[str] = None) -> None:
    failures = collect_failures(events, stack_name)
    for failure in failures:
        logger.error("%s %s: %s", failure.status, failure.logical_id, failure.reason)
    if not failures:
        return
    errors = [classify(f) for f in failures]
    # a conflict is the most specific cause when several resources failed
    for error in errors:
        if isinstance(error, CreationConflictError):
            raise error
    raise errors[0]
