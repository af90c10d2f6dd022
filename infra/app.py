#!/usr/bin/env python3
"""
AWS CDK entry point.

Provisions the routing service described in stacks/routing_service_stack.py.
Configuration comes from ROUTING_* environment variables (see
routing_service/config.py).

Whether the image repository and log group are imported or created is
decided before synthesis:
  - pinned with context:  cdk synth -c repository=import -c log_group=create
  - otherwise probed live with boto3 in the target account/region
"""

import logging

import boto3
import aws_cdk as cdk

from routing_service.config import load_config
from routing_service.probes import ProvisioningPlan, ResourceProbe, resolve_plan
from stacks.routing_service_stack import RoutingServiceStack

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("routing_app")

app = cdk.App()
config = load_config()

plan = ProvisioningPlan.from_context({
    "repository": app.node.try_get_context("repository"),
    "log_group": app.node.try_get_context("log_group"),
})
if plan is None:
    session = boto3.Session(region_name=config.region)
    plan = resolve_plan(config, ResourceProbe(session, config.stack_name))
else:
    logger.info("Provisioning plan pinned by context: %s", plan.as_context())

RoutingServiceStack(
    app,
    config.stack_name,
    config=config,
    plan=plan,
    env=cdk.Environment(account=config.account, region=config.region),
)

app.synth()
