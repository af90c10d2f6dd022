"""
Report the outcome of a routing service deployment.

Reads the CloudFormation stack status and, if any resource failed,
prints the failures and exits non-zero with the classified cause
(name collisions are reported as creation conflicts, never retried).

Usage:
    python scripts/check_deploy.py
    python scripts/check_deploy.py --wait    # poll until the stack settles
"""

from __future__ import annotations

import argparse
import sys
import time

import boto3
from botocore.exceptions import ClientError

from routing_service.config import ConfigError, load_config
from routing_service.probes import CreationConflictError
from routing_service.reporting import collect_failures, fetch_stack_events, raise_for_failures

SETTLED_SUFFIXES = ("_COMPLETE", "_FAILED")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Routing service deployment report")
    parser.add_argument("--wait", action="store_true", help="poll until the stack settles")
    parser.add_argument("--interval", type=int, default=15)
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    cfn = boto3.client("cloudformation", region_name=config.region)
    stack_name = config.stack_name

    while True:
        try:
            stack = cfn.describe_stacks(StackName=stack_name)["Stacks"][0]
        except ClientError as e:
            print(f"ERROR: cannot describe stack {stack_name}: {e}")
            sys.exit(1)
        status = stack["StackStatus"]
        print(f"  {stack_name}: {status}")
        if not args.wait or status.endswith(SETTLED_SUFFIXES):
            break
        time.sleep(args.interval)

    events = fetch_stack_events(cfn, stack_name)
    failures = collect_failures(events, stack_name)
    if not failures and "ROLLBACK" not in status and not status.endswith("_FAILED"):
        print("\nDeployment healthy.")
        return

    print(f"\n{len(failures)} failed resource(s):")
    for f in failures:
        print(f"  {f.logical_id:<32} {f.resource_type:<40} {f.reason}")

    try:
        raise_for_failures(events, stack_name)
    except CreationConflictError as e:
        print(f"\nCreation conflict (not retried): {e}")
        print("Import the existing resource (-c repository=import / -c log_group=import) or remove it.")
        sys.exit(1)
    except RuntimeError as e:
        print(f"\nDeployment failed: {e}")
        sys.exit(1)
    print(f"\nStack ended in {status} without resource failures.")
    sys.exit(1)


if __name__ == "__main__":
    main()
