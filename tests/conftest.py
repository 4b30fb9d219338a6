"""Pytest configuration and fixtures.

This module configures pytest to resolve imports from the project root and
provides helpers for building settings and synthesizing the stack.
"""

import sys
from pathlib import Path

import pytest

# Add the project directory to Python path so jenkins_infra imports work
project_dir = Path(__file__).parent.parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

import aws_cdk as cdk  # noqa: E402
from aws_cdk.assertions import Template  # noqa: E402
from pydantic_settings import SettingsConfigDict  # noqa: E402

from jenkins_infra.config import JenkinsSettings  # noqa: E402
from jenkins_infra.stack import JenkinsStack  # noqa: E402

TEST_ACCOUNT = "123456789012"
TEST_REGION = "us-east-1"


@pytest.fixture
def isolated_settings(tmp_path):
    """Settings class that never reads a .env file.

    Tests only see environment variables set via monkeypatch (or already
    present in the process).
    """
    non_existent_env_file = str(tmp_path / ".env-nonexistent")

    class TestSettings(JenkinsSettings):
        model_config = SettingsConfigDict(env_file=non_existent_env_file)

    return TestSettings


@pytest.fixture
def make_settings(isolated_settings):
    """Factory for settings pinned to a test account and region."""

    def _make(**overrides):
        overrides.setdefault("account", TEST_ACCOUNT)
        overrides.setdefault("region", TEST_REGION)
        return isolated_settings(**overrides)

    return _make


@pytest.fixture
def build_stack(make_settings):
    """Factory that synthesizes a JenkinsStack in a fresh app."""

    def _build(**overrides):
        settings = make_settings(**overrides)
        app = cdk.App()
        return JenkinsStack(
            app,
            "TestJenkinsStack",
            settings=settings,
            env=cdk.Environment(account=settings.account, region=settings.region),
        )

    return _build


@pytest.fixture
def synth_template(build_stack):
    """Factory returning the CloudFormation template of a fresh stack."""

    def _synth(**overrides) -> Template:
        return Template.from_stack(build_stack(**overrides))

    return _synth
