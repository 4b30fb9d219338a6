#!/usr/bin/env python3
"""CDK App entry point for the Jenkins controller infrastructure."""

import json
import logging
import sys

import aws_cdk as cdk
from pydantic import ValidationError

from jenkins_infra.config import load_settings
from jenkins_infra.stack import JenkinsStack

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = cdk.App()

try:
    settings = load_settings(app.node)
except (ValidationError, json.JSONDecodeError) as e:
    logger.error(f"Invalid Jenkins stack configuration: {e}")
    sys.exit(1)

JenkinsStack(
    app,
    settings.stack_name,
    settings=settings,
    env=cdk.Environment(
        account=settings.account,
        region=settings.region,
    ),
    description="Jenkins controller on ECS Fargate with persistent EFS storage",
)

app.synth()
