"""Shared fixtures for the routing service tests."""

from typing import Dict

import pytest

import aws_cdk as cdk
from aws_cdk.assertions import Template

from routing_service.config import DeploymentConfig, load_config
from routing_service.probes import Action, ProvisioningPlan
from stacks.routing_service_stack import RoutingServiceStack

ACCOUNT = "123456789012"
REGION = "eu-west-2"
SECRET_ARN = f"arn:aws:secretsmanager:{REGION}:{ACCOUNT}:secret:prod/routing-AbCdEf"


@pytest.fixture
def base_env() -> Dict[str, str]:
    """Minimal complete ROUTING_* environment (the reference scenario)."""
    return {
        "ROUTING_ACCOUNT": ACCOUNT,
        "ROUTING_REGION": REGION,
        "ROUTING_ENVIRONMENT": "prod",
        "ROUTING_VPC_NAME": "shared-vpc-prod",
        "ROUTING_HOSTED_ZONE": "example.org",
        "ROUTING_RECORD_NAME": "service",
        "ROUTING_CERT_SECRET_ARN": SECRET_ARN,
        "ROUTING_DATA_BUCKET": "data.example.org",
        "ROUTING_DATA_KEY": "region-extract.pbf",
    }


@pytest.fixture
def config(base_env) -> DeploymentConfig:
    return load_config(base_env)


CREATE_ALL = ProvisioningPlan(repository=Action.CREATE, log_group=Action.CREATE)
IMPORT_ALL = ProvisioningPlan(repository=Action.IMPORT, log_group=Action.IMPORT)


def build_stack(config: DeploymentConfig, plan: ProvisioningPlan = CREATE_ALL) -> RoutingServiceStack:
    app = cdk.App()
    return RoutingServiceStack(
        app,
        config.stack_name,
        config=config,
        plan=plan,
        env=cdk.Environment(account=config.account, region=config.region),
    )


@pytest.fixture
def stack(config) -> RoutingServiceStack:
    return build_stack(config)


@pytest.fixture
def template(stack) -> Template:
    return Template.from_stack(stack)
