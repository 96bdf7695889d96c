"""Tests for remediation strategies and strategy chains."""

import ipaddress
from unittest.mock import Mock

import pytest
from hypothesis import given, settings, strategies as st

from gpu_provisioner.core.exceptions import ServiceError
from gpu_provisioner.core.models import (
    AttemptOutcome, ConflictCheck, ConflictKind, Finding, ResourceScope,
)
from gpu_provisioner.engine.terraform import CommandResult
from gpu_provisioner.engine.tfvars import TfvarsEditor
from gpu_provisioner.preflight.strategies import (
    PRIVATE_CIDR_POOL, PUBLIC_CIDR_POOL, CapacityReport, Destructiveness, ExistingResourceReport,
    ImportExistingResources, ReleaseUnusedResources, RemediationStrategy, RemediationStrategyChain,
    RenameWithSuffix, ReuseExistingNetwork, SelectAlternateCidrs, pick_free_cidrs,
)
from gpu_provisioner.services.inspector import CapacityUsage, SubnetCollision

from conftest import AddressPool, make_resource


class ScriptedStrategy(RemediationStrategy):
    """Strategy returning a fixed outcome and counting calls."""

    def __init__(self, name, destructiveness, outcome=AttemptOutcome.RESOLVED, applicable=True, error=None):
        self.name = name
        self.destructiveness = destructiveness
        self.outcome = outcome
        self.applicable = applicable
        self.error = error
        self.calls = 0

    def is_applicable(self, check, finding):
        return self.applicable

    def apply(self, check, finding):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self._attempt(self.outcome, f"{self.name} ran")


def new_check():
    return ConflictCheck("log-groups-exist", ConflictKind.ALREADY_EXISTS, ResourceScope("log_group", "dpg"))


CONFLICT = Finding(["/aws/vpc/dpg-flow-logs"], "1 log group exists")
CLEAR = Finding([], "No existing log groups")


class TestRemediationStrategyChain:
    """Ordering, re-inspection and logging of strategy attempts."""

    def test_rejects_decreasing_destructiveness(self):
        strategies = [
            ScriptedStrategy("delete", Destructiveness.DELETE),
            ScriptedStrategy("import", Destructiveness.IMPORT),
        ]

        with pytest.raises(ValueError):
            RemediationStrategyChain(ConflictKind.ALREADY_EXISTS, strategies)

    def test_stops_at_first_verified_resolution(self):
        """Later strategies do not run once re-inspection is clear."""
        first = ScriptedStrategy("import", Destructiveness.IMPORT)
        second = ScriptedStrategy("rename", Destructiveness.RENAME)
        check = new_check()

        finding = RemediationStrategyChain(ConflictKind.ALREADY_EXISTS, [first, second]).remediate(
            check, CONFLICT, lambda: CLEAR
        )

        assert not finding.has_conflict
        assert first.calls == 1
        assert second.calls == 0
        assert [attempt.outcome for attempt in check.remediation_log] == [AttemptOutcome.RESOLVED]

    def test_reported_success_is_verified(self):
        """A strategy claiming success is downgraded when the conflict remains."""
        first = ScriptedStrategy("import", Destructiveness.IMPORT)
        second = ScriptedStrategy("rename", Destructiveness.RENAME)
        inspections = iter([CONFLICT, CLEAR])
        check = new_check()

        finding = RemediationStrategyChain(ConflictKind.ALREADY_EXISTS, [first, second]).remediate(
            check, CONFLICT, lambda: next(inspections)
        )

        assert not finding.has_conflict
        assert check.remediation_log[0].outcome is AttemptOutcome.PARTIAL
        assert "re-inspection still shows" in check.remediation_log[0].message
        assert second.calls == 1

    def test_not_applicable_and_errors_are_logged(self):
        skipped = ScriptedStrategy("reuse", Destructiveness.REUSE, applicable=False)
        broken = ScriptedStrategy("import", Destructiveness.IMPORT, error=ServiceError("throttled"))
        terminal = ScriptedStrategy("report", Destructiveness.MANUAL, outcome=AttemptOutcome.FAILED)
        check = new_check()
        inspect = Mock(return_value=CONFLICT)

        finding = RemediationStrategyChain(ConflictKind.ALREADY_EXISTS, [skipped, broken, terminal]).remediate(
            check, CONFLICT, inspect
        )

        assert finding.has_conflict
        assert [attempt.outcome for attempt in check.remediation_log] == [
            AttemptOutcome.NOT_APPLICABLE, AttemptOutcome.FAILED, AttemptOutcome.FAILED,
        ]
        assert check.remediation_log[1].message == "throttled"
        assert skipped.calls == 0
        inspect.assert_not_called()


class TestCapacityStrategies:

    def test_releases_only_the_shortfall(self):
        """With 2 of 5 free and 4 required, exactly 2 addresses are released."""
        pool = AddressPool(limit=5, in_use=3, reclaimable_ids=["eipalloc-1", "eipalloc-2", "eipalloc-3"])
        strategy = ReleaseUnusedResources("Elastic IP", 4, pool.release)
        finding = Finding(["eipalloc-1"], "limit", {"usage": pool.usage()})

        attempt = strategy.apply(new_check(), finding)

        assert attempt.outcome is AttemptOutcome.RESOLVED
        assert pool.released == ["eipalloc-1", "eipalloc-2"]
        assert attempt.changes == {"released": ["eipalloc-1", "eipalloc-2"]}

    def test_partial_when_not_enough_to_release(self):
        pool = AddressPool(limit=5, in_use=5, reclaimable_ids=["eipalloc-1"])
        strategy = ReleaseUnusedResources("Elastic IP", 2, pool.release)

        attempt = strategy.apply(new_check(), Finding(["eipalloc-1"], "limit", {"usage": pool.usage()}))

        assert attempt.outcome is AttemptOutcome.PARTIAL

    def test_not_applicable_without_reclaimable(self):
        pool = AddressPool(limit=5, in_use=5, reclaimable_ids=[])
        strategy = ReleaseUnusedResources("Elastic IP", 2, pool.release)

        assert not strategy.is_applicable(new_check(), Finding(["q"], "limit", {"usage": pool.usage()}))

    def test_capacity_report_commands(self):
        report = CapacityReport("Elastic IP", 2, ("ec2", "L-0263D0A3"), "us-east-1",
                                "aws ec2 describe-addresses", "aws ec2 release-address")
        usage = CapacityUsage(limit=5, in_use=5)

        attempt = report.apply(new_check(), Finding(["q"], "limit", {"usage": usage}))

        assert attempt.outcome is AttemptOutcome.FAILED
        assert "5 in use of 5 allowed" in attempt.message
        assert attempt.manual_commands[-1] == (
            "aws service-quotas request-service-quota-increase --service-code ec2 "
            "--quota-code L-0263D0A3 --desired-value 7 --region us-east-1"
        )


def existing_finding():
    return Finding(
        ["/aws/vpc/dpg-flow-logs", "/aws/lambda/dpg-start-instances"],
        "2 log groups exist",
        {
            "addresses": {
                "/aws/vpc/dpg-flow-logs": "aws_cloudwatch_log_group.vpc_flow_logs[0]",
                "/aws/lambda/dpg-start-instances": "aws_cloudwatch_log_group.scheduler_start[0]",
            },
            "identifiers": {
                "/aws/vpc/dpg-flow-logs": "/aws/vpc/dpg-flow-logs",
                "/aws/lambda/dpg-start-instances": "/aws/lambda/dpg-start-instances",
            },
        },
    )


class TestAlreadyExistsStrategies:

    def test_import_skips_tracked_addresses(self):
        engine = Mock()
        engine.state_list.return_value = ["aws_cloudwatch_log_group.vpc_flow_logs[0]"]
        engine.import_resource.return_value = CommandResult(["terraform", "import"], 0, "Import successful!", "")

        attempt = ImportExistingResources(engine).apply(new_check(), existing_finding())

        assert attempt.outcome is AttemptOutcome.RESOLVED
        engine.import_resource.assert_called_once_with(
            "aws_cloudwatch_log_group.scheduler_start[0]", "/aws/lambda/dpg-start-instances"
        )
        assert attempt.changes["already_tracked"] == ["aws_cloudwatch_log_group.vpc_flow_logs[0]"]

    def test_import_failure(self):
        engine = Mock()
        engine.state_list.return_value = []
        engine.import_resource.return_value = CommandResult(["terraform", "import"], 1, "", "Error")

        attempt = ImportExistingResources(engine).apply(new_check(), existing_finding())

        assert attempt.outcome is AttemptOutcome.FAILED

    def test_rename_appends_region_then_random_suffix(self, run_context):
        tfvars = TfvarsEditor(run_context.config.tfvars_path)
        strategy = RenameWithSuffix(run_context, tfvars)

        first = strategy.apply(new_check(), existing_finding())

        assert run_context.name_prefix == "dpg-infra-staging-us-east-1"
        assert tfvars.get("name_prefix") == "dpg-infra-staging-us-east-1"
        assert first.changes["name_prefix"]["before"] == "dpg-infra-staging"

        strategy.apply(new_check(), existing_finding())

        assert run_context.name_prefix.startswith("dpg-infra-staging-us-east-1-")
        assert len(run_context.name_prefix) == len("dpg-infra-staging-us-east-1-") + 6

    def test_report_lists_import_and_delete_commands(self, run_context):
        report = ExistingResourceReport(run_context, lambda name, identifier: f"delete {name}")

        attempt = report.apply(new_check(), existing_finding())

        assert attempt.outcome is AttemptOutcome.FAILED
        assert ("terraform import aws_cloudwatch_log_group.vpc_flow_logs[0] /aws/vpc/dpg-flow-logs"
                in attempt.manual_commands)
        assert "delete /aws/lambda/dpg-start-instances" in attempt.manual_commands


def cidr_finding(vpc_ids=("vpc-1",)):
    collisions = [
        SubnetCollision("10.0.1.0/24", f"subnet-{i}", vpc_id, "10.0.1.0/24")
        for i, vpc_id in enumerate(vpc_ids)
    ]
    return Finding(["10.0.1.0/24"], "overlap", {"collisions": collisions})


class TestCidrStrategies:

    def test_reuse_existing_network(self, run_context):
        """A VPC holding every requested range with internet access is reused."""
        inspector = Mock()
        inspector.vpc_has_internet_gateway.return_value = True
        inspector.vpc_subnets.return_value = [
            make_resource("subnet", f"subnet-{cidr}", cidr_block=cidr, vpc_id="vpc-1")
            for cidr in ["10.0.1.0/24", "10.0.2.0/24", "10.0.11.0/24", "10.0.12.0/24"]
        ]
        tfvars = TfvarsEditor(run_context.config.tfvars_path)
        strategy = ReuseExistingNetwork(run_context, inspector, tfvars)

        assert strategy.is_applicable(new_check(), cidr_finding())
        attempt = strategy.apply(new_check(), cidr_finding())

        assert attempt.outcome is AttemptOutcome.RESOLVED
        assert run_context.reused_network["vpc_id"] == "vpc-1"
        assert run_context.planned_subnet_cidrs == []
        assert tfvars.get("use_existing_vpc") == "true"
        assert tfvars.get("existing_vpc_id") == "vpc-1"

    def test_reuse_needs_a_single_vpc_with_every_range(self, run_context):
        inspector = Mock()
        inspector.vpc_has_internet_gateway.return_value = True
        inspector.vpc_subnets.return_value = [
            make_resource("subnet", "subnet-a", cidr_block="10.0.1.0/24", vpc_id="vpc-1")
        ]
        strategy = ReuseExistingNetwork(run_context, inspector, Mock())

        assert not strategy.is_applicable(new_check(), cidr_finding(("vpc-1", "vpc-2")))
        assert not strategy.is_applicable(new_check(), cidr_finding())

    def test_select_alternate_cidrs(self, run_context):
        inspector = Mock()
        inspector.used_cidrs.return_value = ["10.0.1.0/24", "10.0.11.0/24"]
        tfvars = TfvarsEditor(run_context.config.tfvars_path)

        attempt = SelectAlternateCidrs(run_context, inspector, tfvars).apply(new_check(), cidr_finding())

        assert attempt.outcome is AttemptOutcome.RESOLVED
        assert run_context.public_subnet_cidrs == ["10.0.2.0/24", "10.0.3.0/24"]
        assert run_context.private_subnet_cidrs == ["10.0.12.0/24", "10.0.10.0/24"]
        assert "10.0.3.0/24" in tfvars.read()["public_subnet_cidrs"]

    def test_select_fails_when_pools_are_exhausted(self, run_context):
        inspector = Mock()
        inspector.used_cidrs.return_value = ["10.0.0.0/16"]

        attempt = SelectAlternateCidrs(run_context, inspector, Mock()).apply(new_check(), cidr_finding())

        assert attempt.outcome is AttemptOutcome.FAILED

    @settings(max_examples=100, deadline=None)
    @given(taken=st.lists(st.sampled_from(PUBLIC_CIDR_POOL + PRIVATE_CIDR_POOL + ("10.0.1.0/24",)),
                          unique=True, max_size=8))
    def test_picked_ranges_never_overlap(self, taken):
        """Chosen ranges overlap neither taken ranges nor each other."""
        taken_networks = [ipaddress.ip_network(cidr) for cidr in taken]
        before = list(taken_networks)

        chosen = pick_free_cidrs(["10.0.1.0/24", "10.0.2.0/24"], PUBLIC_CIDR_POOL, taken_networks)

        if chosen is None:
            return
        networks = [ipaddress.ip_network(cidr) for cidr in chosen]
        assert len(chosen) == 2
        for network in networks:
            assert not any(network.overlaps(other) for other in before)
        assert not networks[0].overlaps(networks[1])
