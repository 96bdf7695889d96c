"""
Pytest configuration and shared fixtures for GPU Provisioner tests.
"""
from datetime import datetime
from io import StringIO
from unittest.mock import Mock

import boto3
import pytest
from moto import mock_aws
from rich.console import Console

from gpu_provisioner.core.config import DeploymentConfig
from gpu_provisioner.core.context import RunContext
from gpu_provisioner.core.models import OperationResult, Resource
from gpu_provisioner.services.inspector import CapacityUsage
from gpu_provisioner.state.deployment_state import InMemoryDeploymentStateStore


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def mock_aws_services():
    """Mock all AWS services used by the application."""
    with mock_aws():
        yield


@pytest.fixture
def working_dir(tmp_path):
    """Terraform root module directory with a starting tfvars file."""
    directory = tmp_path / "infra"
    directory.mkdir()
    (directory / "terraform.tfvars").write_text(
        'name_prefix = "dpg-infra-staging"\n'
        'instance_type = "g5.4xlarge"\n'
    )
    return directory


@pytest.fixture
def deploy_config(working_dir):
    return DeploymentConfig(working_dir=working_dir)


@pytest.fixture
def console():
    """Rich console writing into a buffer."""
    return Console(file=StringIO(), width=160, force_terminal=False)


@pytest.fixture
def prompter():
    """Prompter that confirms everything unless a test says otherwise."""
    mock = Mock()
    mock.confirm.return_value = True
    mock.decide_rollback.return_value = False
    return mock


@pytest.fixture
def state_store():
    return InMemoryDeploymentStateStore()


@pytest.fixture
def run_context(deploy_config, console, prompter, state_store, tmp_path):
    return RunContext(
        config=deploy_config,
        session=boto3.Session(region_name="us-east-1"),
        console=console,
        state_store=state_store,
        prompter=prompter,
        reports_dir=tmp_path / "reports",
    )


def make_resource(service_type, resource_id, name=None, state="available", **metadata):
    """Build a Resource the way the service managers do."""
    return Resource(
        service_type=service_type,
        resource_id=resource_id,
        region="us-east-1",
        current_state=state,
        tags={"Name": name} if name else {},
        metadata=metadata,
    )


def make_result(resource, success=True, message=None, skipped=False, operation="delete"):
    return OperationResult(
        success=success,
        resource=resource,
        operation=operation,
        message=message or f"Deleted {resource.service_type} {resource.resource_id}",
        timestamp=datetime.now(),
        skipped=skipped,
    )


class AddressPool:
    """Elastic IP allocations with a fixed limit; released addresses free capacity."""

    def __init__(self, limit, in_use, reclaimable_ids):
        self.limit = limit
        self.in_use = in_use
        self.reclaimable = [
            make_resource("elastic_ip", allocation_id, name=f"dpg-infra-staging-eip-{i}")
            for i, allocation_id in enumerate(reclaimable_ids)
        ]
        self.released = []

    def usage(self, prefix=None):
        return CapacityUsage(limit=self.limit, in_use=self.in_use, reclaimable=list(self.reclaimable))

    def release(self, resource):
        self.reclaimable.remove(resource)
        self.released.append(resource.resource_id)
        self.in_use -= 1
