"""Tests for the pre-flight conflict scanner and its checks."""

import json
from unittest.mock import Mock

from gpu_provisioner.core.exceptions import ServiceError
from gpu_provisioner.core.models import AttemptOutcome, CheckStatus, ConflictKind, Finding
from gpu_provisioner.engine.tfvars import TfvarsEditor
from gpu_provisioner.preflight.checks import (
    DEFAULT_CHECKS, ElasticIpLimitCheck, IamPolicyCollisionCheck, LogGroupCollisionCheck,
    OrphanedEventRuleCheck, PreflightCheck, SubnetCidrCheck, VpcLimitCheck,
)
from gpu_provisioner.preflight.scanner import ConflictScanner
from gpu_provisioner.preflight.strategies import Destructiveness, RemediationStrategy
from gpu_provisioner.services.inspector import CapacityUsage, SubnetCollision
from gpu_provisioner.state.reports import ReportWriter

from conftest import AddressPool, make_resource, make_result


class StaticCheck(PreflightCheck):
    """Check whose findings are scripted."""

    def __init__(self, context, name, kind, findings, blocking=True, error=None):
        super().__init__(context, Mock(), Mock(), Mock())
        self.name = name
        self.kind = kind
        self.blocking = blocking
        self.findings = list(findings)
        self.error = error

    def inspect(self):
        if self.error is not None:
            raise self.error
        return self.findings.pop(0) if len(self.findings) > 1 else self.findings[0]

    def strategies(self):
        return [NoopStrategy()]


class NoopStrategy(RemediationStrategy):
    name = "noop"
    destructiveness = Destructiveness.REUSE

    def apply(self, check, finding):
        return self._attempt(AttemptOutcome.RESOLVED, "tried")


CLEAR = Finding([], "clear")
CONFLICT = Finding(["thing"], "conflict")


def scanner_for(context, checks):
    return ConflictScanner(context, checks, ReportWriter(context.reports_dir))


class TestConflictScanner:
    """Fail-closed scanning."""

    def test_passing_checks(self, run_context):
        check = StaticCheck(run_context, "vpc-limit", ConflictKind.CAPACITY_LIMIT, [CLEAR])

        report = scanner_for(run_context, [check]).scan()

        assert report.passed
        assert report.checks[0].status is CheckStatus.PASS
        assert report.report_path is None

    def test_remediated_after_verification(self, run_context):
        check = StaticCheck(run_context, "log-groups-exist", ConflictKind.ALREADY_EXISTS, [CONFLICT, CLEAR])

        report = scanner_for(run_context, [check]).scan()

        assert report.passed
        assert report.checks[0].status is CheckStatus.REMEDIATED
        assert report.checks[0].remediation_log[0].strategy == "noop"

    def test_blocked_check_fails_closed(self, run_context):
        """A blocking conflict that survives remediation stops the scan and writes a report."""
        check = StaticCheck(run_context, "subnet-cidr-conflicts", ConflictKind.CIDR_OVERLAP, [CONFLICT])

        report = scanner_for(run_context, [check]).scan()

        assert not report.passed
        assert [c.name for c in report.blocked] == ["subnet-cidr-conflicts"]
        with open(report.report_path) as f:
            assert json.load(f)["blocked"][0]["check"] == "subnet-cidr-conflicts"

    def test_inspection_error_blocks(self, run_context):
        """An inspection that cannot run counts as a conflict."""
        check = StaticCheck(run_context, "vpc-limit", ConflictKind.CAPACITY_LIMIT, [CLEAR],
                            error=ServiceError("AccessDenied"))

        report = scanner_for(run_context, [check]).scan()

        assert not report.passed
        assert report.checks[0].status is CheckStatus.BLOCKED
        assert "Inspection failed" in report.checks[0].finding.summary

    def test_override(self, run_context):
        check = StaticCheck(run_context, "vpc-limit", ConflictKind.CAPACITY_LIMIT, [CONFLICT])

        report = scanner_for(run_context, [check]).scan(allow_override=True)

        assert report.passed
        assert report.overridden
        assert report.report_path is not None

    def test_non_blocking_checks_only_warn(self, run_context):
        check = StaticCheck(run_context, "orphaned-event-rules", ConflictKind.ORPHANED_RULE, [CONFLICT],
                            blocking=False)

        report = scanner_for(run_context, [check]).scan()

        assert report.passed
        assert [c.name for c in report.warnings] == ["orphaned-event-rules"]

    def test_checks_run_capacity_first(self, run_context):
        checks = [
            StaticCheck(run_context, "orphans", ConflictKind.ORPHANED_ROLE, [CLEAR], blocking=False),
            StaticCheck(run_context, "cidrs", ConflictKind.CIDR_OVERLAP, [CLEAR]),
            StaticCheck(run_context, "names", ConflictKind.ALREADY_EXISTS, [CLEAR]),
            StaticCheck(run_context, "eips", ConflictKind.CAPACITY_LIMIT, [CLEAR]),
        ]

        report = scanner_for(run_context, checks).scan()

        assert [c.name for c in report.checks] == ["eips", "names", "cidrs", "orphans"]

    def test_default_battery(self, run_context):
        scanner = ConflictScanner.with_default_checks(run_context, Mock(), Mock(), Mock())

        assert len(scanner.checks) == len(DEFAULT_CHECKS)
        assert scanner.checks[0].kind is ConflictKind.CAPACITY_LIMIT
        assert not scanner.checks[-1].blocking


class TestElasticIpScenario:
    """Five allowed, three in use, two reclaimable, four required."""

    def test_releases_two_and_remediates(self, run_context):
        run_context.config.required_elastic_ips = 4
        pool = AddressPool(limit=5, in_use=3, reclaimable_ids=["eipalloc-a", "eipalloc-b"])
        inspector = Mock()
        inspector.elastic_ip_usage.side_effect = pool.usage
        inspector.release_address.side_effect = lambda allocation_id: pool.release(
            next(r for r in pool.reclaimable if r.resource_id == allocation_id)
        )
        check = ElasticIpLimitCheck(run_context, inspector, Mock(), Mock())

        report = scanner_for(run_context, [check]).scan()

        result = report.checks[0]
        assert result.status is CheckStatus.REMEDIATED
        assert pool.released == ["eipalloc-a", "eipalloc-b"]
        assert inspector.release_address.call_count == 2
        assert result.remediation_log[0].strategy == "release-unused-Elastic-IP"

    def test_blocks_with_quota_request_when_nothing_to_release(self, run_context):
        inspector = Mock()
        inspector.elastic_ip_usage.return_value = CapacityUsage(limit=5, in_use=5)
        check = ElasticIpLimitCheck(run_context, inspector, Mock(), Mock())

        report = scanner_for(run_context, [check]).scan()

        result = report.checks[0]
        assert result.status is CheckStatus.BLOCKED
        assert result.finding.conflicts == ["eip-quota:5/5"]
        assert any("request-service-quota-increase" in command for command in result.manual_commands)


class TestChecks:
    """Inspections of the individual checks."""

    def test_vpc_limit_within_quota(self, run_context):
        inspector = Mock()
        inspector.vpc_usage.return_value = CapacityUsage(limit=5, in_use=2)

        finding = VpcLimitCheck(run_context, inspector, Mock(), Mock()).inspect()

        assert not finding.has_conflict

    def test_log_groups_tracked_in_state_are_not_conflicts(self, run_context):
        inspector = Mock()
        inspector.existing_log_groups.side_effect = lambda names: [n for n in names if "flow-logs" in n]
        engine = Mock()
        engine.state_list.return_value = [
            "module.gpu_infrastructure.aws_cloudwatch_log_group.vpc_flow_logs[0]"
        ]

        finding = LogGroupCollisionCheck(run_context, inspector, engine, Mock()).inspect()

        assert not finding.has_conflict
        assert finding.facts["identifiers"] == {
            "/aws/vpc/dpg-infra-staging-flow-logs": "/aws/vpc/dpg-infra-staging-flow-logs"
        }

    def test_untracked_policy_is_a_conflict(self, run_context):
        inspector = Mock()
        policy = make_resource("iam_policy", "dpg-infra-staging-scheduler-ec2-policy",
                               arn="arn:aws:iam::123456789012:policy/dpg-infra-staging-scheduler-ec2-policy")
        inspector.existing_policies.return_value = {"dpg-infra-staging-scheduler-ec2-policy": policy}
        engine = Mock()
        engine.state_list.return_value = []
        check = IamPolicyCollisionCheck(run_context, inspector, engine, Mock())

        finding = check.inspect()

        assert finding.conflicts == ["dpg-infra-staging-scheduler-ec2-policy"]
        assert finding.facts["identifiers"]["dpg-infra-staging-scheduler-ec2-policy"].startswith("arn:aws:iam::")
        assert [s.destructiveness for s in check.strategies()] == sorted(
            s.destructiveness for s in check.strategies()
        )

    def test_rename_moves_the_check_scope(self, run_context):
        """Planned names follow the prefix chosen during the run."""
        check = LogGroupCollisionCheck(run_context, Mock(), Mock(), TfvarsEditor(run_context.config.tfvars_path))
        run_context.name_prefix = "dpg-infra-staging-us-east-1"

        assert "/aws/vpc/dpg-infra-staging-us-east-1-flow-logs" in check.planned()
        assert check.scope().key == "dpg-infra-staging-us-east-1"

    def test_subnet_check_uses_planned_ranges(self, run_context):
        inspector = Mock()
        inspector.subnet_collisions.return_value = [
            SubnetCollision("10.0.1.0/24", "subnet-1", "vpc-1", "10.0.0.0/16"),
        ]

        finding = SubnetCidrCheck(run_context, inspector, Mock(), Mock()).inspect()

        assert finding.conflicts == ["10.0.1.0/24"]
        inspector.subnet_collisions.assert_called_once_with(
            ["10.0.1.0/24", "10.0.2.0/24", "10.0.11.0/24", "10.0.12.0/24"]
        )

    def test_orphaned_rules_are_deleted(self, run_context):
        rule = make_resource("event_rule", "dpg-infra-staging-start-instances")
        inspector = Mock()
        inspector.existing_event_rules.side_effect = [[rule], []]
        inspector.delete.return_value = make_result(rule)
        check = OrphanedEventRuleCheck(run_context, inspector, Mock(), Mock())

        report = scanner_for(run_context, [check]).scan()

        assert report.checks[0].status is CheckStatus.REMEDIATED
        inspector.delete.assert_called_once_with(rule)
