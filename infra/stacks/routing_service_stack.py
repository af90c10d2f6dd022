"""
AWS CDK stack: routing service on ECS Fargate behind a public HTTPS ALB.

Resources:
  - VPC looked up by its Name tag (never created here)
  - Task role (runtime) and execution role, least privilege
  - ECR repository and CloudWatch log group, imported or created per plan
  - EFS file system + access point for the routing graph cache
  - ECS cluster, Cloud Map private namespace
  - Fargate task definition and service (rolling, self-healing)
  - Application Load Balancer: HTTP -> HTTPS redirect, TLS listener
  - Route 53 alias record for the public name
"""

from typing import Dict, List

from constructs import Construct
from aws_cdk import (
    Stack,
    Duration,
    RemovalPolicy,
    Tags,
    CfnOutput,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_ecr as ecr,
    aws_efs as efs,
    aws_iam as iam,
    aws_logs as logs,
    aws_secretsmanager as secretsmanager,
    aws_certificatemanager as acm,
    aws_elasticloadbalancingv2 as elbv2,
    aws_route53 as route53,
    aws_route53_targets as route53_targets,
    aws_servicediscovery as servicediscovery,
)

from routing_service.config import DeploymentConfig
from routing_service.lifecycle import RolloutBudget, split_grace_period
from routing_service.policy import (
    EDGE,
    FILE_SYSTEM,
    HTTP_PORT,
    HTTPS_PORT,
    INTERNET,
    SERVICE,
    Grant,
    SecurityEdge,
    check_exposure,
    check_least_privilege,
    execution_grants,
    runtime_grants,
    security_edges,
)
from routing_service.probes import Action, ProvisioningPlan

DATA_VOLUME = "routing-data"
CERT_SECRET_FIELD = "SSL_CERT_ARN"


def _statement(grant: Grant) -> iam.PolicyStatement:
    return iam.PolicyStatement(
        effect=iam.Effect.ALLOW,
        actions=list(grant.actions),
        resources=list(grant.resources),
        conditions=grant.conditions or None,
    )


class RoutingServiceStack(Stack):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: DeploymentConfig,
        plan: ProvisioningPlan,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.config = config
        self.plan = plan

        Tags.of(self).add("Project", "routing-service")
        Tags.of(self).add("Environment", config.environment_name)

        private_subnets = ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS)

        # ---------------------------------------------------------------
        # Network -- shared VPC, resolved by tag
        # ---------------------------------------------------------------
        vpc = ec2.Vpc.from_lookup(self, "Vpc", tags={"Name": config.vpc_name_tag})
        self.vpc = vpc

        # ---------------------------------------------------------------
        # Identities
        # ---------------------------------------------------------------
        # runtime: what the routing engine itself may call
        self.task_role = iam.Role(
            self, "TaskRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            description="Routing service runtime: map extract read, file system client",
        )
        # execution: image pull and log delivery by the ECS agent only
        self.execution_role = iam.Role(
            self, "ExecutionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            description="Routing service execution: image pull, log write",
        )

        # ---------------------------------------------------------------
        # Image repository -- import if present, otherwise create
        # ---------------------------------------------------------------
        if plan.repository is Action.IMPORT:
            self.repository = ecr.Repository.from_repository_name(
                self, "Repository", config.repository_name,
            )
        else:
            self.repository = ecr.Repository(
                self, "Repository",
                repository_name=config.repository_name,
                removal_policy=RemovalPolicy.RETAIN,
                image_scan_on_push=True,
            )

        # ---------------------------------------------------------------
        # Log group -- import if present, otherwise create (one week)
        # ---------------------------------------------------------------
        if plan.log_group is Action.IMPORT:
            self.log_group = logs.LogGroup.from_log_group_name(
                self, "LogGroup", config.log_group_name,
            )
        else:
            self.log_group = logs.LogGroup(
                self, "LogGroup",
                log_group_name=config.log_group_name,
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=RemovalPolicy.RETAIN,
            )

        # ---------------------------------------------------------------
        # Security groups -- default deny, rules added from the edge list
        # ---------------------------------------------------------------
        alb_sg = ec2.SecurityGroup(
            self, "LoadBalancerSecurityGroup",
            vpc=vpc,
            description="Public edge: HTTP/HTTPS from the internet",
            allow_all_outbound=True,
        )
        service_sg = ec2.SecurityGroup(
            self, "ServiceSecurityGroup",
            vpc=vpc,
            description="Routing tasks: container port from the load balancer only",
            allow_all_outbound=True,
        )
        self.security_groups: Dict[str, ec2.SecurityGroup] = {EDGE: alb_sg, SERVICE: service_sg}

        # ---------------------------------------------------------------
        # Persistent store -- EFS + access point
        # ---------------------------------------------------------------
        self.file_system = None
        self.access_point = None
        if config.persistent_storage:
            efs_sg = ec2.SecurityGroup(
                self, "FileSystemSecurityGroup",
                vpc=vpc,
                description="Routing data: NFS from the routing tasks only",
                allow_all_outbound=True,
            )
            self.security_groups[FILE_SYSTEM] = efs_sg

            self.file_system = efs.FileSystem(
                self, "FileSystem",
                vpc=vpc,
                vpc_subnets=private_subnets,
                security_group=efs_sg,
                encrypted=True,
                performance_mode=efs.PerformanceMode.GENERAL_PURPOSE,
                throughput_mode=efs.ThroughputMode.BURSTING,
                lifecycle_policy=efs.LifecyclePolicy.AFTER_30_DAYS,
                removal_policy=RemovalPolicy.RETAIN,
            )
            uid, gid = str(config.posix_uid), str(config.posix_gid)
            self.access_point = self.file_system.add_access_point(
                "AccessPoint",
                path=config.access_point_path,
                create_acl=efs.Acl(owner_uid=uid, owner_gid=gid, permissions=config.posix_permissions),
                posix_user=efs.PosixUser(uid=uid, gid=gid),
            )

        self._apply_edges()

        # ---------------------------------------------------------------
        # Grants
        # ---------------------------------------------------------------
        execution = execution_grants(
            self.repository.repository_arn, self.log_group.log_group_arn,
        )
        runtime = runtime_grants(
            config.data_bucket,
            config.data_key,
            self.file_system.file_system_arn if self.file_system else None,
            self.access_point.access_point_arn if self.access_point else None,
        )
        check_least_privilege(execution, runtime)
        for grant in execution:
            self.execution_role.add_to_policy(_statement(grant))
        for grant in runtime:
            self.task_role.add_to_policy(_statement(grant))

        # ---------------------------------------------------------------
        # Cluster + service discovery
        # ---------------------------------------------------------------
        cluster = ecs.Cluster(self, "Cluster", vpc=vpc)
        self.cluster = cluster

        self.namespace = servicediscovery.PrivateDnsNamespace(
            self, "Namespace",
            name=config.namespace,
            vpc=vpc,
            description=f"Private names for {config.environment_name} routing",
        )

        # ---------------------------------------------------------------
        # Task definition
        # ---------------------------------------------------------------
        cpu, memory = config.task_size
        start_period, grace = split_grace_period(config.startup_grace_s)

        task_definition = ecs.FargateTaskDefinition(
            self, "TaskDefinition",
            cpu=cpu,
            memory_limit_mib=memory,
            task_role=self.task_role,
            execution_role=self.execution_role,
        )
        self.task_definition = task_definition

        if self.file_system is not None:
            task_definition.add_volume(
                name=DATA_VOLUME,
                efs_volume_configuration=ecs.EfsVolumeConfiguration(
                    file_system_id=self.file_system.file_system_id,
                    transit_encryption="ENABLED",
                    authorization_config=ecs.AuthorizationConfig(
                        access_point_id=self.access_point.access_point_id,
                        iam="ENABLED",
                    ),
                ),
            )

        container = task_definition.add_container(
            "RoutingContainer",
            image=ecs.ContainerImage.from_ecr_repository(self.repository, config.image_tag),
            port_mappings=[
                ecs.PortMapping(
                    container_port=config.container_port,
                    host_port=config.container_port,
                    protocol=ecs.Protocol.TCP,
                ),
            ],
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix=config.log_stream_prefix,
                log_group=self.log_group,
            ),
            environment=config.environment,
            entry_point=["sh", "-c"],
            command=[config.command],
            # must match the access point's POSIX identity
            user=f"{config.posix_uid}:{config.posix_gid}" if config.persistent_storage else None,
            health_check=ecs.HealthCheck(
                command=config.health_check_command,
                interval=Duration.seconds(config.health_interval_s),
                timeout=Duration.seconds(config.health_timeout_s),
                retries=config.health_retries,
                start_period=Duration.seconds(start_period),
            ),
        )
        container.add_ulimits(
            ecs.Ulimit(
                name=ecs.UlimitName.NOFILE,
                soft_limit=config.nofile_soft_limit,
                hard_limit=config.nofile_hard_limit,
            )
        )
        if self.file_system is not None:
            container.add_mount_points(
                ecs.MountPoint(
                    container_path=config.mount_path,
                    source_volume=DATA_VOLUME,
                    read_only=False,
                )
            )
        self.container = container

        # ---------------------------------------------------------------
        # Fargate service
        # ---------------------------------------------------------------
        self.rollout = RolloutBudget(
            desired=config.desired_count,
            min_healthy_percent=config.min_healthy_percent,
            max_healthy_percent=config.max_healthy_percent,
        )
        # raises if a single replacement cannot complete within the budget
        self.rollout.simulate_replacement(min(1, config.desired_count))

        self.service = ecs.FargateService(
            self, "Service",
            cluster=cluster,
            task_definition=task_definition,
            desired_count=config.desired_count,
            min_healthy_percent=config.min_healthy_percent,
            max_healthy_percent=config.max_healthy_percent,
            security_groups=[service_sg],
            vpc_subnets=private_subnets,
            assign_public_ip=False,
            health_check_grace_period=Duration.seconds(grace),
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=True),
            cloud_map_options=ecs.CloudMapOptions(
                name=config.discovery_name,
                cloud_map_namespace=self.namespace,
                dns_record_type=servicediscovery.DnsRecordType.A,
                dns_ttl=Duration.seconds(config.discovery_ttl_s),
            ),
        )

        # ---------------------------------------------------------------
        # Load balancer -- redirect 80, terminate TLS on 443
        # ---------------------------------------------------------------
        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, "LoadBalancer",
            vpc=vpc,
            internet_facing=True,
            security_group=alb_sg,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )

        if config.certificate_arn:
            certificate_arn = config.certificate_arn
        else:
            cert_secret = secretsmanager.Secret.from_secret_complete_arn(
                self, "CertificateSecret", config.certificate_secret_arn,
            )
            certificate_arn = cert_secret.secret_value_from_json(CERT_SECRET_FIELD).unsafe_unwrap()
        certificate = acm.Certificate.from_certificate_arn(self, "Certificate", certificate_arn)

        self.https_listener = self.load_balancer.add_listener(
            "HttpsListener",
            port=HTTPS_PORT,
            protocol=elbv2.ApplicationProtocol.HTTPS,
            certificates=[certificate],
            ssl_policy=elbv2.SslPolicy.RECOMMENDED_TLS,
            open=False,
        )
        self.http_listener = self.load_balancer.add_listener(
            "HttpListener",
            port=HTTP_PORT,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False,
            default_action=elbv2.ListenerAction.redirect(
                protocol="HTTPS",
                port=str(HTTPS_PORT),
                permanent=True,  # 301
            ),
        )

        self.target_group = self.https_listener.add_targets(
            "ServiceTargets",
            port=config.container_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            targets=[self.service],
            health_check=elbv2.HealthCheck(
                path=config.health_path,
                port=str(config.container_port),
                interval=Duration.seconds(config.target_health_interval_s),
                timeout=Duration.seconds(config.health_timeout_s),
                healthy_threshold_count=max(config.health_retries, 2),
                unhealthy_threshold_count=max(config.health_retries, 2),
            ),
        )

        # ---------------------------------------------------------------
        # DNS
        # ---------------------------------------------------------------
        zone = route53.HostedZone.from_lookup(
            self, "HostedZone", domain_name=config.hosted_zone_domain,
        )
        self.alias_record = route53.ARecord(
            self, "AliasRecord",
            zone=zone,
            record_name=config.record_name,
            target=route53.RecordTarget.from_alias(
                route53_targets.LoadBalancerTarget(self.load_balancer)
            ),
        )

        # ---------------------------------------------------------------
        # Outputs
        # ---------------------------------------------------------------
        CfnOutput(self, "LoadBalancerDNS", value=self.load_balancer.load_balancer_dns_name)
        CfnOutput(self, "ServiceUrl", value=f"https://{config.fqdn}")
        CfnOutput(self, "RepositoryUri", value=self.repository.repository_uri)
        CfnOutput(self, "LogGroupName", value=self.log_group.log_group_name)
        CfnOutput(self, "NamespaceName", value=self.namespace.namespace_name)
        if self.file_system is not None:
            CfnOutput(self, "FileSystemId", value=self.file_system.file_system_id)

    def _apply_edges(self) -> List[SecurityEdge]:
        """Turn the declared boundary graph into ingress rules."""
        edges = security_edges(self.config)
        check_exposure(edges)
        for edge in edges:
            if edge.source == INTERNET:
                peer = ec2.Peer.any_ipv4()
            else:
                peer = self.security_groups[edge.source]
            self.security_groups[edge.target].add_ingress_rule(
                peer,
                ec2.Port.tcp(edge.port),
                f"{edge.source} to {edge.target} on {edge.protocol}/{edge.port}",
            )
        self.edges = edges
        return edges
