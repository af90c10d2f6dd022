"""Synthesized-template tests for the routing service stack."""

import json

import pytest
from aws_cdk.assertions import Match, Template

from routing_service.config import load_config
from conftest import CREATE_ALL, IMPORT_ALL, build_stack


def _logical_id(stack, construct):
    return stack.get_logical_id(construct.node.default_child)


def _policy_actions(template, role_id):
    actions = set()
    for policy in template.find_resources("AWS::IAM::Policy").values():
        props = policy["Properties"]
        if {"Ref": role_id} not in props["Roles"]:
            continue
        for statement in props["PolicyDocument"]["Statement"]:
            action = statement["Action"]
            actions.update([action] if isinstance(action, str) else action)
    return actions


def _container(template):
    (task,) = template.find_resources("AWS::ECS::TaskDefinition").values()
    (container,) = task["Properties"]["ContainerDefinitions"]
    return container


# ---------------------------------------------------------------------------
# edge termination
# ---------------------------------------------------------------------------

def test_plaintext_listener_permanently_redirects(template):
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
        "Port": 80,
        "Protocol": "HTTP",
        "DefaultActions": [{
            "Type": "redirect",
            "RedirectConfig": {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"},
        }],
    })


def test_tls_listener_uses_certificate_from_secret(template):
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
        "Port": 443,
        "Protocol": "HTTPS",
        "Certificates": [{"CertificateArn": Match.any_value()}],
    })
    assert "SSL_CERT_ARN" in json.dumps(template.to_json())


def test_direct_certificate_arn(base_env):
    cert = "arn:aws:acm:eu-west-2:123456789012:certificate/abc"
    del base_env["ROUTING_CERT_SECRET_ARN"]
    base_env["ROUTING_CERT_ARN"] = cert
    template = Template.from_stack(build_stack(load_config(base_env)))
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
        "Port": 443,
        "Certificates": [{"CertificateArn": cert}],
    })


def test_only_edge_is_internet_facing(template):
    template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 1)
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Scheme": "internet-facing",
    })
    template.has_resource_properties("AWS::ECS::Service", {
        "NetworkConfiguration": {"AwsvpcConfiguration": {"AssignPublicIp": "DISABLED"}},
    })


# ---------------------------------------------------------------------------
# ports
# ---------------------------------------------------------------------------

def test_container_port_matches_health_check_and_forwarding(template):
    container = _container(template)
    assert container["PortMappings"] == [
        {"ContainerPort": 8989, "HostPort": 8989, "Protocol": "tcp"},
    ]
    assert "localhost:8989/health" in container["HealthCheck"]["Command"][1]

    template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Port": 8989,
        "Protocol": "HTTP",
        "TargetType": "ip",
        "HealthCheckPath": "/health",
        "HealthCheckPort": "8989",
    })
    template.has_resource_properties("AWS::ECS::Service", {
        "LoadBalancers": [{"ContainerName": "RoutingContainer", "ContainerPort": 8989}],
    })


def test_custom_port_flows_everywhere(base_env):
    base_env["ROUTING_CONTAINER_PORT"] = "8080"
    template = Template.from_stack(build_stack(load_config(base_env)))
    assert _container(template)["PortMappings"][0]["ContainerPort"] == 8080
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Port": 8080, "HealthCheckPort": "8080",
    })
    template.has_resource_properties("AWS::EC2::SecurityGroupIngress", {
        "FromPort": 8080, "ToPort": 8080,
    })


# ---------------------------------------------------------------------------
# security boundaries
# ---------------------------------------------------------------------------

def test_security_group_rules(stack, template):
    alb = _logical_id(stack, stack.security_groups["edge"])
    service = _logical_id(stack, stack.security_groups["service"])
    efs = _logical_id(stack, stack.security_groups["file_system"])

    ingress = template.find_resources("AWS::EC2::SecurityGroupIngress")
    rules = {
        (
            r["Properties"]["SourceSecurityGroupId"]["Fn::GetAtt"][0],
            r["Properties"]["GroupId"]["Fn::GetAtt"][0],
            r["Properties"]["FromPort"],
            r["Properties"]["ToPort"],
        )
        for r in ingress.values()
    }
    assert rules == {(alb, service, 8989, 8989), (service, efs, 2049, 2049)}
    assert len(ingress) == 2

    groups = template.find_resources("AWS::EC2::SecurityGroup")
    public = groups[alb]["Properties"]["SecurityGroupIngress"]
    assert {(r["CidrIp"], r["FromPort"]) for r in public} == {("0.0.0.0/0", 80), ("0.0.0.0/0", 443)}
    # nothing but the edge accepts traffic from an address range
    assert "SecurityGroupIngress" not in groups[service]["Properties"]
    assert "SecurityGroupIngress" not in groups[efs]["Properties"]
    for group in groups.values():
        assert group["Properties"]["SecurityGroupEgress"][0]["CidrIp"] == "0.0.0.0/0"


def test_file_system_unreachable_from_edge(stack, template):
    alb = _logical_id(stack, stack.security_groups["edge"])
    efs = _logical_id(stack, stack.security_groups["file_system"])
    for rule in template.find_resources("AWS::EC2::SecurityGroupIngress").values():
        props = rule["Properties"]
        if props["GroupId"]["Fn::GetAtt"][0] == efs:
            assert props["SourceSecurityGroupId"]["Fn::GetAtt"][0] != alb
            assert props["FromPort"] == 2049


# ---------------------------------------------------------------------------
# identities
# ---------------------------------------------------------------------------

def test_identity_separation(stack, template):
    execution = _policy_actions(template, _logical_id(stack, stack.execution_role))
    runtime = _policy_actions(template, _logical_id(stack, stack.task_role))

    assert "ecr:BatchGetImage" in execution
    assert "logs:PutLogEvents" in execution
    assert not any(a.startswith(("s3:", "elasticfilesystem:")) for a in execution)

    assert {"s3:GetObject", "s3:ListBucket", "elasticfilesystem:ClientMount"} <= runtime
    assert not any(a.startswith("ecr:") for a in runtime)


def test_runtime_reads_only_the_extract(template):
    template.has_resource_properties("AWS::IAM::Policy", {
        "PolicyDocument": {
            "Statement": Match.array_with([
                Match.object_like({
                    "Action": "s3:GetObject",
                    "Resource": "arn:aws:s3:::data.example.org/region-extract.pbf",
                }),
            ]),
        },
    })


# ---------------------------------------------------------------------------
# lookup or create
# ---------------------------------------------------------------------------

def test_created_resources_are_retained(template):
    for resource_type in ("AWS::ECR::Repository", "AWS::Logs::LogGroup", "AWS::EFS::FileSystem"):
        template.has_resource(resource_type, {
            "DeletionPolicy": "Retain",
            "UpdateReplacePolicy": "Retain",
        })
    template.has_resource_properties("AWS::ECR::Repository", {"RepositoryName": "graphhopper"})
    template.has_resource_properties("AWS::Logs::LogGroup", {
        "LogGroupName": "/ecs/graphhopper",
        "RetentionInDays": 7,
    })


def test_imported_resources_are_not_created(config):
    template = Template.from_stack(build_stack(config, IMPORT_ALL))
    template.resource_count_is("AWS::ECR::Repository", 0)
    template.resource_count_is("AWS::Logs::LogGroup", 0)
    container = _container(template)
    assert container["LogConfiguration"]["Options"]["awslogs-group"] == "/ecs/graphhopper"


def test_repeated_synthesis_is_identical(config):
    first = Template.from_stack(build_stack(config, CREATE_ALL)).to_json()
    second = Template.from_stack(build_stack(config, CREATE_ALL)).to_json()
    assert first == second
    for resource_type in ("AWS::ECR::Repository", "AWS::Logs::LogGroup", "AWS::EFS::FileSystem"):
        assert sum(1 for r in first["Resources"].values() if r["Type"] == resource_type) == 1


def test_network_is_looked_up_not_created(template):
    template.resource_count_is("AWS::EC2::VPC", 0)
    template.resource_count_is("AWS::EC2::Subnet", 0)


# ---------------------------------------------------------------------------
# workload
# ---------------------------------------------------------------------------

def test_workload_definition(template):
    template.has_resource_properties("AWS::ECS::TaskDefinition", {
        "Cpu": "2048",
        "Memory": "8192",
        "RequiresCompatibilities": ["FARGATE"],
    })
    container = _container(template)
    env = {e["Name"]: e["Value"] for e in container["Environment"]}
    assert env["DATA_BUCKET"] == "data.example.org"
    assert env["DATA_KEY"] == "region-extract.pbf"
    assert env["DATA_DIR"] == "/data"
    assert container["Ulimits"] == [{"Name": "nofile", "SoftLimit": 65536, "HardLimit": 1048576}]
    assert container["HealthCheck"]["Retries"] == 3
    # container checks cap at 300s, the service grace covers the rest
    assert container["HealthCheck"]["StartPeriod"] == 300
    assert container["User"] == "1000:1000"
    assert container["MountPoints"] == [
        {"ContainerPath": "/data", "ReadOnly": False, "SourceVolume": "routing-data"},
    ]


def test_access_point_matches_container_identity(template):
    template.has_resource_properties("AWS::EFS::AccessPoint", {
        "PosixUser": {"Uid": "1000", "Gid": "1000"},
        "RootDirectory": {
            "Path": "/graphhopper",
            "CreationInfo": {"OwnerUid": "1000", "OwnerGid": "1000", "Permissions": "755"},
        },
    })
    template.has_resource_properties("AWS::ECS::TaskDefinition", {
        "Volumes": [{
            "Name": "routing-data",
            "EFSVolumeConfiguration": {
                "TransitEncryption": "ENABLED",
                "AuthorizationConfig": {"IAM": "ENABLED"},
            },
        }],
    })


def test_rolling_update_and_discovery(template):
    template.has_resource_properties("AWS::ECS::Service", {
        "DesiredCount": 1,
        "HealthCheckGracePeriodSeconds": 600,
        "DeploymentConfiguration": {
            "MinimumHealthyPercent": 100,
            "MaximumPercent": 200,
            "DeploymentCircuitBreaker": {"Enable": True, "Rollback": True},
        },
        "ServiceRegistries": [Match.any_value()],
    })
    template.has_resource_properties("AWS::ServiceDiscovery::PrivateDnsNamespace", {
        "Name": "prod.internal",
    })
    template.has_resource_properties("AWS::ServiceDiscovery::Service", {
        "Name": "graphhopper",
        "DnsConfig": {"DnsRecords": [{"Type": "A", "TTL": 60}]},
    })


def test_without_persistent_storage(base_env):
    base_env["ROUTING_PERSISTENT_STORAGE"] = "false"
    stack = build_stack(load_config(base_env))
    template = Template.from_stack(stack)
    template.resource_count_is("AWS::EFS::FileSystem", 0)
    template.resource_count_is("AWS::EFS::AccessPoint", 0)
    template.resource_count_is("AWS::EC2::SecurityGroupIngress", 1)
    runtime = _policy_actions(template, _logical_id(stack, stack.task_role))
    assert not any(a.startswith("elasticfilesystem:") for a in runtime)
    container = _container(template)
    assert "MountPoints" not in container or container["MountPoints"] == []
    assert "DATA_DIR" not in {e["Name"] for e in container["Environment"]}


# ---------------------------------------------------------------------------
# dns
# ---------------------------------------------------------------------------

def test_alias_record_targets_load_balancer(stack, template):
    lb = stack.get_logical_id(stack.load_balancer.node.default_child)
    template.has_resource_properties("AWS::Route53::RecordSet", {
        "Name": "service.example.org.",
        "Type": "A",
        "AliasTarget": {
            "HostedZoneId": {"Fn::GetAtt": [lb, "CanonicalHostedZoneID"]},
        },
    })
    template.has_output("ServiceUrl", {"Value": "https://service.example.org"})


@pytest.mark.parametrize("tier, cpu, memory", [("small", "1024", "2048"), ("large", "4096", "16384")])
def test_sizing_tiers(base_env, tier, cpu, memory):
    base_env["ROUTING_SIZING_TIER"] = tier
    template = Template.from_stack(build_stack(load_config(base_env)))
    template.has_resource_properties("AWS::ECS::TaskDefinition", {"Cpu": cpu, "Memory": memory})
