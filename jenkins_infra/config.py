"""Configuration management for the Jenkins stack.

This module provides the settings that drive synthesis. Values come from CDK
context, environment variables (prefixed with ``JENKINS_``), an optional
``.env`` file in the project root, and finally the defaults declared here.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, get_origin

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REGION = "us-east-1"

# Transition windows EFS accepts for moving files to infrequent access
EFS_TRANSITION_DAYS = (1, 7, 14, 30, 60, 90)

# Retention periods CloudWatch Logs accepts
LOG_RETENTION_DAYS = (1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365)


class JenkinsSettings(BaseSettings):
    """Inputs of the Jenkins stack, loaded from the environment with defaults."""

    model_config = SettingsConfigDict(
        env_prefix="JENKINS_",
        # Look for .env file in the project root (parent of jenkins_infra)
        env_file=str(Path(__file__).parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Target environment
    # JENKINS_ACCOUNT and JENKINS_REGION win over the CDK toolkit variables
    account: Optional[str] = Field(
        default_factory=lambda: os.getenv("CDK_DEFAULT_ACCOUNT"),
        description="AWS account to deploy into; None keeps the stack environment-agnostic",
    )
    region: str = Field(
        default_factory=lambda: os.getenv("CDK_DEFAULT_REGION", DEFAULT_REGION),
        description="AWS region to deploy into",
    )
    stack_name: str = Field(default="JenkinsStack", description="CloudFormation stack name")
    name_prefix: str = Field(
        default="jenkins",
        description="Prefix for physical names such as the log group",
    )

    # Network
    vpc_cidr: str = Field(default="10.0.0.0/16", description="VPC address space")
    max_azs: int = Field(default=2, ge=1, description="Number of availability zones")
    nat_gateways: int = Field(default=1, ge=0, description="Number of NAT gateways")

    # Container
    jenkins_image: str = Field(
        default="jenkins/jenkins:lts-jdk17",
        description="Container image of the Jenkins controller",
    )
    cpu: int = Field(default=1024, description="Fargate CPU units for the task")
    memory_limit_mib: int = Field(default=2048, description="Fargate memory for the task in MiB")
    container_port: int = Field(default=8080, description="Port the Jenkins web UI listens on")
    jenkins_home: str = Field(
        default="/var/jenkins_home",
        description="Mount path of the persistent file system inside the container",
    )
    java_opts: str = Field(
        default="-Djava.awt.headless=true",
        description="JAVA_OPTS passed to the Jenkins JVM",
    )
    environment: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the Jenkins container",
    )
    health_check_path: str = Field(
        default="/login",
        description="HTTP path used by the container and load balancer health checks",
    )
    health_check_grace_period_seconds: int = Field(
        default=300,
        ge=0,
        description="Time Jenkins gets to start before health checks count",
    )
    log_retention_days: int = Field(default=30, description="CloudWatch log retention")

    # Service and scaling
    desired_count: int = Field(default=1, ge=0, description="Desired number of controller tasks")
    assign_public_ip: bool = Field(
        default=True,
        description="Run tasks in public subnets with a public IP",
    )
    min_capacity: int = Field(default=1, ge=0, description="Lower bound of the task count")
    max_capacity: int = Field(default=1, ge=1, description="Upper bound of the task count")
    target_cpu_utilization: int = Field(
        default=75,
        description="CPU utilization percentage the scaling policy tracks",
    )
    scale_in_cooldown_seconds: int = Field(default=300, ge=0)
    scale_out_cooldown_seconds: int = Field(default=60, ge=0)

    # Persistent file system
    efs_transition_days: Optional[int] = Field(
        default=14,
        description="Days before files move to infrequent access; None disables the transition",
    )
    efs_removal_policy: Literal["retain", "destroy"] = Field(
        default="retain",
        description="What happens to the file system when the stack is deleted",
    )

    # Permissions
    artifact_bucket_names: List[str] = Field(
        default_factory=list,
        description="S3 buckets the Jenkins task may read and write",
    )

    # Optional custom domain
    domain_name: Optional[str] = Field(
        default=None,
        description="Public host name served over HTTPS, e.g. jenkins.example.com",
    )
    hosted_zone_id: Optional[str] = Field(default=None, description="Route 53 hosted zone ID")
    hosted_zone_name: Optional[str] = Field(default=None, description="Route 53 hosted zone name")

    # Monitoring
    enable_alarms: bool = Field(default=True, description="Create CPU and memory alarms")
    alarm_email: Optional[str] = Field(
        default=None,
        description="E-mail address subscribed to the alarm topic",
    )

    @field_validator("container_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is within valid range."""
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("jenkins_home", "health_check_path")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Validate that container paths are absolute."""
        if not v.startswith("/"):
            raise ValueError(f"Path must be absolute, got '{v}'")
        return v

    @field_validator("target_cpu_utilization")
    @classmethod
    def validate_utilization(cls, v: int) -> int:
        """Validate that the utilization target is a percentage."""
        if not (1 <= v <= 100):
            raise ValueError("Target CPU utilization must be between 1 and 100")
        return v

    @field_validator("efs_transition_days", mode="before")
    @classmethod
    def parse_disabled_transition(cls, v: Any) -> Any:
        """Treat 0, "none", "null" and empty strings as a disabled transition."""
        if isinstance(v, str) and v.strip().lower() in ("", "0", "none", "null"):
            return None
        if v == 0:
            return None
        return v

    @field_validator("efs_transition_days")
    @classmethod
    def validate_transition_days(cls, v: Optional[int]) -> Optional[int]:
        """Validate that EFS supports the transition window."""
        if v is not None and v not in EFS_TRANSITION_DAYS:
            raise ValueError(f"EFS transition days must be one of {EFS_TRANSITION_DAYS}")
        return v

    @field_validator("log_retention_days")
    @classmethod
    def validate_log_retention(cls, v: int) -> int:
        """Validate that CloudWatch Logs supports the retention period."""
        if v not in LOG_RETENTION_DAYS:
            raise ValueError(f"Log retention days must be one of {LOG_RETENTION_DAYS}")
        return v

    @model_validator(mode="after")
    def validate_capacity(self) -> "JenkinsSettings":
        """Validate that the desired count sits inside the scaling bounds."""
        if self.min_capacity > self.max_capacity:
            raise ValueError("min_capacity must not exceed max_capacity")
        if not (self.min_capacity <= self.desired_count <= self.max_capacity):
            raise ValueError("desired_count must be between min_capacity and max_capacity")
        return self

    @model_validator(mode="after")
    def validate_egress(self) -> "JenkinsSettings":
        """Validate that tasks without a public IP can still pull images."""
        if self.nat_gateways == 0 and not self.assign_public_ip:
            raise ValueError("assign_public_ip=False requires at least one NAT gateway")
        return self

    @model_validator(mode="after")
    def validate_domain(self) -> "JenkinsSettings":
        """Validate that a custom domain comes with its hosted zone."""
        if self.domain_name and not (self.hosted_zone_id and self.hosted_zone_name):
            raise ValueError("domain_name requires hosted_zone_id and hosted_zone_name")
        return self

    @property
    def removal_policy_is_destroy(self) -> bool:
        """Whether deleting the stack also deletes the Jenkins home."""
        return self.efs_removal_policy == "destroy"

    @property
    def container_environment(self) -> Dict[str, str]:
        """Environment variables of the Jenkins container."""
        return {
            **self.environment,
            "JAVA_OPTS": self.java_opts,
            "JENKINS_HOME": self.jenkins_home,
        }


def _parse_context_value(annotation: Any, value: Any) -> Any:
    """Decode JSON passed as a string for list and dict fields.

    Values given with ``cdk synth -c key=value`` always arrive as strings.
    """
    if isinstance(value, str) and get_origin(annotation) in (list, dict):
        return json.loads(value)
    return value


def load_settings(node: Optional[Any] = None, **overrides: Any) -> JenkinsSettings:
    """Build settings, giving CDK context precedence over the environment.

    Args:
        node: Construct node (usually ``app.node``) whose context is consulted
            for keys named after settings fields. An explicit null in
            context is passed through, so optional fields can be cleared.
        **overrides: Explicit values that win over context and environment.

    Returns:
        Validated settings.

    Raises:
        pydantic.ValidationError: If any value is invalid.
    """
    values: Dict[str, Any] = {}
    if node is not None:
        context = node.get_all_context()
        for name, field in JenkinsSettings.model_fields.items():
            if name in context:
                values[name] = _parse_context_value(field.annotation, context[name])
    values.update(overrides)
    return JenkinsSettings(**values)
