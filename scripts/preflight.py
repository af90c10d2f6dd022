"""
Pre-deployment check for the routing service.

Verifies credentials, probes the image repository and log group, and prints
the provisioning plan the stack will be synthesized with:
  1. ECR repository   -- import if it exists, create otherwise
  2. CloudWatch logs  -- import if it exists, create otherwise

Usage:
    python scripts/preflight.py
    python scripts/preflight.py --strict    # never plan a creation

Requires:
    - ROUTING_* environment variables (see routing_service/config.py)
    - AWS credentials configured (~/.aws/credentials)
"""

from __future__ import annotations

import argparse
import logging
import sys

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from routing_service.config import ConfigError, load_config
from routing_service.lifecycle import RolloutBudget, split_grace_period, time_to_serving
from routing_service.policy import check_exposure, security_edges
from routing_service.probes import ResolutionError, ResourceProbe, resolve_plan

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Routing service pre-deployment check")
    parser.add_argument("--strict", action="store_true",
                        help="fail instead of planning creation of missing resources")
    args = parser.parse_args(argv)

    print("=" * 60)
    print("  Routing Service -- Preflight")
    print("=" * 60)

    try:
        config = load_config()
    except ConfigError as e:
        print(f"\nERROR: {e}")
        sys.exit(1)
    if args.strict:
        config = config.model_copy(update={"create_missing": False})

    session = boto3.Session(region_name=config.region)

    # verify credentials and target account
    try:
        identity = session.client("sts").get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        print(f"\nERROR: AWS credentials not configured.\n{e}")
        sys.exit(1)
    print(f"\nAWS Account: {identity['Account']}")
    print(f"Region:      {config.region}")
    print(f"Stack:       {config.stack_name}\n")
    if identity["Account"] != config.account:
        print(f"ERROR: credentials belong to {identity['Account']}, config targets {config.account}")
        sys.exit(1)

    print("-" * 60)
    try:
        plan = resolve_plan(config, ResourceProbe(session, config.stack_name))
    except ResolutionError as e:
        print(f"[Plan] ERROR: {e}")
        sys.exit(1)
    print(f"[Plan] Repository {config.repository_name}: {plan.repository.value}")
    print(f"[Plan] Log group  {config.log_group_name}: {plan.log_group.value}")

    print("-" * 60)
    edges = security_edges(config)
    check_exposure(edges)
    for edge in edges:
        print(f"[Net]  {edge.source:>8} -> {edge.target:<12} {edge.protocol}/{edge.port}")

    start_period, grace = split_grace_period(config.startup_grace_s)
    budget = RolloutBudget(config.desired_count, config.min_healthy_percent, config.max_healthy_percent)
    worst = min(healthy for _, healthy in budget.simulate_replacement(min(1, config.desired_count)))
    print(f"[Run]  start period {start_period}s, load balancer grace {grace}s")
    serving = time_to_serving(start_period, config.health_interval_s, config.health_retries)
    print(f"[Run]  first serving after {serving}s "
          f"({config.health_retries} passes every {config.health_interval_s}s)")
    if serving > grace:
        print(f"[Run]  WARNING: tasks may be marked unhealthy before they can serve; "
              f"raise ROUTING_STARTUP_GRACE to at least {serving}")
    print(f"[Run]  rollout: min healthy {budget.min_healthy}, max running {budget.max_running}, "
          f"lowest healthy during replace {worst}")

    flags = " ".join(f"-c {k}={v}" for k, v in plan.as_context().items())
    print("\n" + "=" * 60)
    print("  Preflight passed. Pin this plan with:")
    print(f"    cd infra && cdk deploy {flags}")
    print("=" * 60)


if __name__ == "__main__":
    main()
