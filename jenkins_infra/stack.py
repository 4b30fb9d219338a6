"""Main CDK Stack for the Jenkins controller.

This stack creates all AWS resources needed to run a Jenkins controller on
ECS Fargate with a persistent home directory, including:
- VPC with public/private subnets
- ECS cluster
- EFS file system and access point for JENKINS_HOME
- IAM roles
- CloudWatch log group
- Fargate task definition and service
- Application Load Balancer (optionally HTTPS on a custom domain)
- Auto-scaling configuration
- CloudWatch alarms
"""

import logging

import aws_cdk as cdk
from aws_cdk import (
    aws_certificatemanager as acm,
    aws_cloudwatch as cloudwatch,
    aws_cloudwatch_actions as cw_actions,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_efs as efs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
    aws_route53 as route53,
    aws_route53_targets as route53_targets,
    aws_s3 as s3,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subscriptions,
)
from constructs import Construct

from jenkins_infra.config import JenkinsSettings

logger = logging.getLogger(__name__)

JENKINS_HOME_VOLUME = "jenkins-home"

# Owner of /var/jenkins_home in the official Jenkins image
JENKINS_UID = "1000"
JENKINS_GID = "1000"

# ECS rejects container health check start periods above five minutes
CONTAINER_START_PERIOD_LIMIT = 300

EFS_LIFECYCLE_POLICIES = {
    1: efs.LifecyclePolicy.AFTER_1_DAY,
    7: efs.LifecyclePolicy.AFTER_7_DAYS,
    14: efs.LifecyclePolicy.AFTER_14_DAYS,
    30: efs.LifecyclePolicy.AFTER_30_DAYS,
    60: efs.LifecyclePolicy.AFTER_60_DAYS,
    90: efs.LifecyclePolicy.AFTER_90_DAYS,
}

LOG_RETENTION = {
    1: logs.RetentionDays.ONE_DAY,
    3: logs.RetentionDays.THREE_DAYS,
    5: logs.RetentionDays.FIVE_DAYS,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    60: logs.RetentionDays.TWO_MONTHS,
    90: logs.RetentionDays.THREE_MONTHS,
    120: logs.RetentionDays.FOUR_MONTHS,
    150: logs.RetentionDays.FIVE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
}


class JenkinsStack(cdk.Stack):
    """Stack running a single Jenkins controller behind a load balancer."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: JenkinsSettings,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.settings = settings
        logger.info(
            f"Building {construct_id} for account={settings.account or '<unresolved>'} "
            f"region={settings.region}"
        )

        self.vpc = self._create_vpc()
        self.cluster = self._create_ecs_cluster()
        self.file_system, self.access_point = self._create_file_system()
        self.iam_roles = self._create_iam_roles()
        self.log_group = self._create_log_group()
        self.task_definition = self._create_task_definition()
        self.alb = self._create_application_load_balancer()
        self.service = self._create_service()
        self._setup_auto_scaling()
        self._setup_monitoring()

        cdk.CfnOutput(
            self,
            "JenkinsEndpoint",
            value=self.endpoint,
            description="Public URL of the Jenkins controller",
        )

    @property
    def endpoint(self) -> str:
        """Public address of Jenkins."""
        if self.settings.domain_name:
            return f"https://{self.settings.domain_name}"
        return f"http://{self.alb.load_balancer_dns_name}"

    @property
    def private_subnet_type(self) -> ec2.SubnetType:
        """Private subnets route through NAT only when gateways exist."""
        if self.settings.nat_gateways == 0:
            return ec2.SubnetType.PRIVATE_ISOLATED
        return ec2.SubnetType.PRIVATE_WITH_EGRESS

    def _create_vpc(self) -> ec2.Vpc:
        """Create VPC with public and private subnets."""
        return ec2.Vpc(
            self,
            "JenkinsVPC",
            ip_addresses=ec2.IpAddresses.cidr(self.settings.vpc_cidr),
            max_azs=self.settings.max_azs,
            nat_gateways=self.settings.nat_gateways,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    subnet_type=ec2.SubnetType.PUBLIC,
                    name="Public",
                    cidr_mask=24,
                ),
                ec2.SubnetConfiguration(
                    subnet_type=self.private_subnet_type,
                    name="Private",
                    cidr_mask=24,
                ),
            ],
        )

    def _create_ecs_cluster(self) -> ecs.Cluster:
        """Create ECS cluster."""
        return ecs.Cluster(
            self,
            "JenkinsCluster",
            vpc=self.vpc,
            container_insights=True,
        )

    def _create_file_system(self) -> tuple[efs.FileSystem, efs.AccessPoint]:
        """Create the EFS file system holding JENKINS_HOME."""
        if self.settings.removal_policy_is_destroy:
            removal_policy = cdk.RemovalPolicy.DESTROY
            logger.warning("Jenkins home will be deleted together with the stack")
        else:
            removal_policy = cdk.RemovalPolicy.RETAIN

        lifecycle_policy = None
        if self.settings.efs_transition_days is not None:
            lifecycle_policy = EFS_LIFECYCLE_POLICIES[self.settings.efs_transition_days]

        file_system = efs.FileSystem(
            self,
            "JenkinsFileSystem",
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=self.private_subnet_type),
            encrypted=True,
            lifecycle_policy=lifecycle_policy,
            performance_mode=efs.PerformanceMode.GENERAL_PURPOSE,
            throughput_mode=efs.ThroughputMode.BURSTING,
            removal_policy=removal_policy,
        )

        access_point = file_system.add_access_point(
            "JenkinsAccessPoint",
            path="/jenkins-home",
            create_acl=efs.Acl(owner_uid=JENKINS_UID, owner_gid=JENKINS_GID, permissions="755"),
            posix_user=efs.PosixUser(uid=JENKINS_UID, gid=JENKINS_GID),
        )

        return file_system, access_point

    def _create_iam_roles(self) -> dict[str, iam.Role]:
        """Create IAM roles for the Jenkins task."""
        # Task execution role
        execution_role = iam.Role(
            self,
            "JenkinsTaskExecutionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AmazonECSTaskExecutionRolePolicy"
                )
            ],
        )

        # Task role (for Jenkins itself)
        task_role = iam.Role(
            self,
            "JenkinsTaskRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
        )

        self.file_system.grant(
            task_role,
            "elasticfilesystem:ClientMount",
            "elasticfilesystem:ClientWrite",
        )

        # Object storage only on buckets named explicitly
        for index, bucket_name in enumerate(self.settings.artifact_bucket_names):
            bucket = s3.Bucket.from_bucket_name(self, f"ArtifactBucket{index}", bucket_name)
            bucket.grant_read_write(task_role)
            logger.info(f"Granting read/write on s3://{bucket_name} to the Jenkins task")

        return {
            "execution_role": execution_role,
            "task_role": task_role,
        }

    def _create_log_group(self) -> logs.LogGroup:
        """Create CloudWatch log group for the controller."""
        return logs.LogGroup(
            self,
            "JenkinsLogGroup",
            log_group_name=f"/ecs/{self.settings.name_prefix}-controller",
            retention=LOG_RETENTION[self.settings.log_retention_days],
            removal_policy=cdk.RemovalPolicy.DESTROY,
        )

    def _create_task_definition(self) -> ecs.FargateTaskDefinition:
        """Create the Fargate task definition with JENKINS_HOME on EFS."""
        task_definition = ecs.FargateTaskDefinition(
            self,
            "JenkinsTaskDefinition",
            cpu=self.settings.cpu,
            memory_limit_mib=self.settings.memory_limit_mib,
            execution_role=self.iam_roles["execution_role"],
            task_role=self.iam_roles["task_role"],
        )

        task_definition.add_volume(
            name=JENKINS_HOME_VOLUME,
            efs_volume_configuration=ecs.EfsVolumeConfiguration(
                file_system_id=self.file_system.file_system_id,
                transit_encryption="ENABLED",
                authorization_config=ecs.AuthorizationConfig(
                    access_point_id=self.access_point.access_point_id,
                    iam="ENABLED",
                ),
            ),
        )

        # Container definition
        container = task_definition.add_container(
            "jenkins",
            image=ecs.ContainerImage.from_registry(self.settings.jenkins_image),
            logging=ecs.LogDriver.aws_logs(
                stream_prefix="jenkins",
                log_group=self.log_group,
            ),
            environment=self.settings.container_environment,
            health_check=ecs.HealthCheck(
                command=[
                    "CMD-SHELL",
                    f"curl -fs http://localhost:{self.settings.container_port}"
                    f"{self.settings.health_check_path} || exit 1",
                ],
                interval=cdk.Duration.seconds(30),
                timeout=cdk.Duration.seconds(10),
                retries=3,
                start_period=cdk.Duration.seconds(
                    min(self.settings.health_check_grace_period_seconds, CONTAINER_START_PERIOD_LIMIT)
                ),
            ),
        )

        container.add_port_mappings(
            ecs.PortMapping(
                container_port=self.settings.container_port,
                protocol=ecs.Protocol.TCP,
            )
        )

        container.add_mount_points(
            ecs.MountPoint(
                container_path=self.settings.jenkins_home,
                source_volume=JENKINS_HOME_VOLUME,
                read_only=False,
            )
        )

        return task_definition

    def _create_application_load_balancer(self) -> elbv2.ApplicationLoadBalancer:
        """Create Application Load Balancer."""
        # Security group for ALB
        alb_security_group = ec2.SecurityGroup(
            self,
            "ALBSecurityGroup",
            vpc=self.vpc,
            description="Security group for the Jenkins load balancer",
            allow_all_outbound=True,
        )

        # Allow HTTP traffic from internet
        alb_security_group.add_ingress_rule(
            ec2.Peer.any_ipv4(),
            ec2.Port.tcp(80),
            "Allow HTTP from internet",
        )

        if self.settings.domain_name:
            alb_security_group.add_ingress_rule(
                ec2.Peer.any_ipv4(),
                ec2.Port.tcp(443),
                "Allow HTTPS from internet",
            )

        alb = elbv2.ApplicationLoadBalancer(
            self,
            "ApplicationLoadBalancer",
            vpc=self.vpc,
            internet_facing=True,
            security_group=alb_security_group,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )

        # Store reference to security group for later use
        self.alb_security_group = alb_security_group

        return alb

    def _create_service(self) -> ecs.FargateService:
        """Create ECS Fargate service for the controller."""
        settings = self.settings

        # Security group for ECS tasks
        service_security_group = ec2.SecurityGroup(
            self,
            "JenkinsServiceSecurityGroup",
            vpc=self.vpc,
            description="Security group for the Jenkins tasks",
            allow_all_outbound=True,
        )

        # Allow traffic from ALB
        service_security_group.add_ingress_rule(
            self.alb_security_group,
            ec2.Port.tcp(settings.container_port),
            "Allow traffic from ALB",
        )

        subnet_type = (
            ec2.SubnetType.PUBLIC if settings.assign_public_ip else self.private_subnet_type
        )

        # At most one controller touches JENKINS_HOME during a deployment
        service = ecs.FargateService(
            self,
            "JenkinsService",
            cluster=self.cluster,
            task_definition=self.task_definition,
            platform_version=ecs.FargatePlatformVersion.VERSION1_4,
            desired_count=settings.desired_count,
            security_groups=[service_security_group],
            vpc_subnets=ec2.SubnetSelection(subnet_type=subnet_type),
            assign_public_ip=settings.assign_public_ip,
            health_check_grace_period=cdk.Duration.seconds(
                settings.health_check_grace_period_seconds
            ),
            min_healthy_percent=0,
            max_healthy_percent=100,
        )

        # Allow NFS from the tasks
        self.file_system.connections.allow_default_port_from(service, "Allow NFS from Jenkins")

        # Target group
        target_group = elbv2.ApplicationTargetGroup(
            self,
            "JenkinsTargetGroup",
            vpc=self.vpc,
            port=settings.container_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            target_type=elbv2.TargetType.IP,
            deregistration_delay=cdk.Duration.seconds(30),
            health_check=elbv2.HealthCheck(
                path=settings.health_check_path,
                healthy_http_codes="200",
                interval=cdk.Duration.seconds(30),
                timeout=cdk.Duration.seconds(10),
                healthy_threshold_count=2,
                unhealthy_threshold_count=5,
            ),
        )

        if settings.domain_name:
            self._create_https_listeners(target_group)
        else:
            self.alb.add_listener(
                "HTTPListener",
                port=80,
                protocol=elbv2.ApplicationProtocol.HTTP,
                open=False,
                default_target_groups=[target_group],
            )

        # Attach service to target group
        service.attach_to_application_target_group(target_group)

        return service

    def _create_https_listeners(self, target_group: elbv2.ApplicationTargetGroup) -> None:
        """Serve Jenkins over HTTPS on the custom domain."""
        settings = self.settings
        logger.info(f"Serving Jenkins on https://{settings.domain_name}")

        hosted_zone = route53.HostedZone.from_hosted_zone_attributes(
            self,
            "HostedZone",
            hosted_zone_id=settings.hosted_zone_id,
            zone_name=settings.hosted_zone_name,
        )

        certificate = acm.Certificate(
            self,
            "JenkinsCertificate",
            domain_name=settings.domain_name,
            validation=acm.CertificateValidation.from_dns(hosted_zone),
        )

        self.alb.add_listener(
            "HTTPSListener",
            port=443,
            protocol=elbv2.ApplicationProtocol.HTTPS,
            open=False,
            certificates=[elbv2.ListenerCertificate.from_certificate_manager(certificate)],
            default_target_groups=[target_group],
        )

        self.alb.add_redirect(
            source_port=80,
            source_protocol=elbv2.ApplicationProtocol.HTTP,
            target_port=443,
            target_protocol=elbv2.ApplicationProtocol.HTTPS,
            open=False,
        )

        route53.ARecord(
            self,
            "JenkinsAliasRecord",
            zone=hosted_zone,
            record_name=settings.domain_name,
            target=route53.RecordTarget.from_alias(
                route53_targets.LoadBalancerTarget(self.alb)
            ),
        )

    def _setup_auto_scaling(self) -> None:
        """Configure auto-scaling for the Jenkins service."""
        if self.settings.max_capacity > 1:
            logger.warning(
                f"Scaling allows up to {self.settings.max_capacity} Jenkins controllers "
                f"sharing one JENKINS_HOME"
            )

        scaling = self.service.auto_scale_task_count(
            min_capacity=self.settings.min_capacity,
            max_capacity=self.settings.max_capacity,
        )

        scaling.scale_on_cpu_utilization(
            "JenkinsCPUScaling",
            target_utilization_percent=self.settings.target_cpu_utilization,
            scale_in_cooldown=cdk.Duration.seconds(self.settings.scale_in_cooldown_seconds),
            scale_out_cooldown=cdk.Duration.seconds(self.settings.scale_out_cooldown_seconds),
        )

    def _setup_monitoring(self) -> None:
        """Set up CloudWatch alarms and monitoring."""
        if not self.settings.enable_alarms:
            return

        # SNS topic for alarms
        alarm_topic = sns.Topic(
            self,
            "AlarmTopic",
            display_name="Jenkins Alarms",
        )

        if self.settings.alarm_email:
            alarm_topic.add_subscription(
                sns_subscriptions.EmailSubscription(self.settings.alarm_email)
            )

        cpu_alarm = cloudwatch.Alarm(
            self,
            "JenkinsCPUAlarm",
            metric=self.service.metric_cpu_utilization(),
            threshold=90,
            evaluation_periods=3,
            alarm_description="Jenkins controller CPU utilization is high",
        )

        memory_alarm = cloudwatch.Alarm(
            self,
            "JenkinsMemoryAlarm",
            metric=self.service.metric_memory_utilization(),
            threshold=90,
            evaluation_periods=3,
            alarm_description="Jenkins controller memory utilization is high",
        )

        cpu_alarm.add_alarm_action(cw_actions.SnsAction(alarm_topic))
        memory_alarm.add_alarm_action(cw_actions.SnsAction(alarm_topic))
