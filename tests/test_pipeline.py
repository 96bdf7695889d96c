"""Tests for the end-to-end deployment pipeline."""

from unittest.mock import Mock

import pytest

from gpu_provisioner.core.exceptions import PreflightBlocked, QuotaExhausted, StateError, UserCancelled
from gpu_provisioner.core.models import (
    DeploymentState, InstanceSelection, PlanAction, PricingModel, QuotaIncreaseRequest, QuotaSnapshot,
    ResourcePlanSummary,
)
from gpu_provisioner.deploy.pipeline import DeploymentPipeline
from gpu_provisioner.engine.tfvars import TfvarsEditor

KEY = "dpg-infra-staging"

SUCCESS_LINES = [
    "module.gpu_infrastructure.aws_vpc.main: Creating...",
    "module.gpu_infrastructure.aws_vpc.main: Creation complete after 2s [id=vpc-0abc]",
    "module.gpu_infrastructure.aws_instance.gpu[0]: Creating...",
    "module.gpu_infrastructure.aws_instance.gpu[0]: Creation complete after 31s [id=i-0abc]",
    "",
    "Apply complete! Resources: 2 added, 0 changed, 0 destroyed.",
]

CAPACITY_LINES = [
    "module.gpu_infrastructure.aws_vpc.main: Creating...",
    "module.gpu_infrastructure.aws_vpc.main: Creation complete after 2s [id=vpc-0abc]",
    "module.gpu_infrastructure.aws_instance.gpu[0]: Creating...",
    "╷",
    "│ Error: creating EC2 Instance: InsufficientInstanceCapacity: We currently do not have sufficient "
    "g5.4xlarge capacity in the Availability Zone you requested (us-east-1a). You can currently get "
    "g5.4xlarge capacity by choosing us-east-1b, us-east-1c.",
    "╵",
]

DENIED_LINES = [
    "module.gpu_infrastructure.aws_vpc.main: Creating...",
    "module.gpu_infrastructure.aws_vpc.main: Creation complete after 2s [id=vpc-0abc]",
    "│ Error: creating IAM Role: UnauthorizedOperation: You are not authorized to perform this operation.",
    "╵",
]


def spot_selection(instance_type="g5.4xlarge"):
    return InstanceSelection(
        instance_type=instance_type,
        pricing_model=PricingModel.SPOT,
        vcpus=16,
        snapshot=QuotaSnapshot(on_demand_vcpu_quota=0, spot_vcpu_quota=32, vcpus_required_for_instance_type=16),
    )


@pytest.fixture
def engine():
    mock = Mock()
    mock.summarize_plan.return_value = ResourcePlanSummary(to_create=2)
    mock.apply.return_value = SUCCESS_LINES
    return mock


@pytest.fixture
def scanner():
    mock = Mock()
    mock.scan.return_value = Mock(passed=True, blocked=[], report_path=None)
    return mock


@pytest.fixture
def advisor():
    mock = Mock()
    mock.select.return_value = spot_selection()
    return mock


@pytest.fixture
def pipeline(run_context, engine, scanner, advisor):
    inspector = Mock()
    inspector.available_zones.return_value = ["us-east-1a", "us-east-1b", "us-east-1c"]
    return DeploymentPipeline(
        run_context,
        inspector,
        engine,
        TfvarsEditor(run_context.config.tfvars_path),
        scanner=scanner,
        advisor=advisor,
        show_progress=False,
    )


class TestDeploymentPipeline:
    """Quota selection, pre-flight, plan and apply."""

    def test_successful_deploy(self, pipeline, run_context, engine):
        result = pipeline.deploy()

        assert result.succeeded
        assert result.outcome.progress.created_count == 2
        assert result.outcome.progress.percent == 100
        assert run_context.state_store.get(KEY) is DeploymentState.DEPLOYED
        engine.remove_plan.assert_called_once_with("tfplan")

    def test_selection_is_written_to_tfvars(self, pipeline, advisor):
        advisor.select.return_value = spot_selection("g4dn.2xlarge")

        pipeline.deploy()

        assert pipeline.tfvars.get("instance_type") == "g4dn.2xlarge"
        assert pipeline.tfvars.get("use_spot") == "true"

    def test_init_runs_before_scan(self, pipeline, engine, scanner):
        calls = []
        engine.init.side_effect = lambda: calls.append("init")
        scanner.scan.side_effect = lambda allow_override=False: calls.append("scan") or Mock(passed=True)

        pipeline.deploy()

        assert calls == ["init", "scan"]

    def test_quota_exhausted_stops_before_terraform(self, pipeline, advisor, engine):
        request = QuotaIncreaseRequest("g5.4xlarge", "us-east-1", 16, 64, {}, {}, "https://console")
        advisor.select.side_effect = QuotaExhausted(request)

        with pytest.raises(QuotaExhausted):
            pipeline.deploy()

        engine.init.assert_not_called()

    def test_blocked_preflight(self, pipeline, scanner, engine, tmp_path):
        """A blocked scan raises before anything is planned."""
        blocked = Mock()
        blocked.name = "subnet-cidr-conflicts"
        scanner.scan.return_value = Mock(passed=False, blocked=[blocked], report_path=tmp_path / "report.json")

        with pytest.raises(PreflightBlocked) as exc_info:
            pipeline.deploy()

        assert "subnet-cidr-conflicts" in str(exc_info.value)
        engine.plan.assert_not_called()

    def test_override_is_passed_to_scan(self, pipeline, scanner):
        pipeline.deploy(allow_override=True)

        scanner.scan.assert_called_once_with(allow_override=True)

    def test_plan_only(self, pipeline, run_context, engine):
        result = pipeline.deploy(plan_only=True)

        assert result.plan_only
        assert result.state is DeploymentState.NOT_DEPLOYED
        engine.plan.assert_called_once_with("tfplan")
        engine.apply.assert_not_called()


class TestRecordedState:
    """A deploy only applies when its outcome can be recorded."""

    @pytest.mark.parametrize("lines", [SUCCESS_LINES, DENIED_LINES])
    def test_refused_after_failed_rollback(self, pipeline, run_context, engine, advisor, lines):
        run_context.state_store.set(KEY, DeploymentState.FAILED)
        run_context.state_store.set(KEY, DeploymentState.ROLLBACK_FAILED)
        engine.apply.return_value = lines

        with pytest.raises(StateError) as exc_info:
            pipeline.deploy()

        assert "gpu-provisioner rollback" in str(exc_info.value)
        assert "cleanup --prefix dpg-infra-staging --region us-east-1" in str(exc_info.value)
        advisor.select.assert_not_called()
        engine.apply.assert_not_called()
        run_context.prompter.decide_rollback.assert_not_called()
        assert run_context.state_store.get(KEY) is DeploymentState.ROLLBACK_FAILED

    def test_plan_only_allowed_after_failed_rollback(self, pipeline, run_context, engine):
        run_context.state_store.set(KEY, DeploymentState.FAILED)
        run_context.state_store.set(KEY, DeploymentState.ROLLBACK_FAILED)

        result = pipeline.deploy(plan_only=True)

        assert result.state is DeploymentState.ROLLBACK_FAILED
        engine.apply.assert_not_called()

    def test_redeploy_after_rollback(self, pipeline, run_context):
        run_context.state_store.set(KEY, DeploymentState.FAILED)
        run_context.state_store.set(KEY, DeploymentState.ROLLED_BACK)

        assert pipeline.deploy().succeeded
        assert run_context.state_store.get(KEY) is DeploymentState.DEPLOYED


class TestPlanReview:
    """Plans that change existing resources need the operator's decision."""

    def test_cancel_removes_plan(self, pipeline, run_context, engine):
        engine.summarize_plan.return_value = ResourcePlanSummary(to_create=2, to_replace=1)
        run_context.prompter.choose_plan_action.return_value = PlanAction.CANCEL

        with pytest.raises(UserCancelled):
            pipeline.deploy()

        engine.remove_plan.assert_called_once_with("tfplan")
        engine.apply.assert_not_called()

    def test_create_only_replans_with_targets(self, pipeline, run_context, engine):
        addresses = ("module.gpu_infrastructure.aws_instance.gpu[0]",)
        engine.summarize_plan.side_effect = [
            ResourcePlanSummary(to_create=1, to_update=1, create_addresses=addresses),
            ResourcePlanSummary(to_create=1, create_addresses=addresses),
        ]
        run_context.prompter.choose_plan_action.return_value = PlanAction.CREATE_ONLY

        result = pipeline.deploy()

        engine.plan.assert_called_with("tfplan", targets=list(addresses))
        assert result.plan.to_update == 0

    def test_proceed_keeps_plan(self, pipeline, run_context, engine):
        engine.summarize_plan.return_value = ResourcePlanSummary(to_create=2, to_destroy=1)
        run_context.prompter.choose_plan_action.return_value = PlanAction.PROCEED

        assert pipeline.deploy().succeeded
        assert engine.plan.call_count == 1

    def test_unreadable_plan_uses_default_total(self, pipeline, engine):
        engine.summarize_plan.return_value = None

        result = pipeline.deploy()

        assert result.outcome.progress.total_resources == 59


class TestApplyFailures:
    """Classification, zone failover and rollback decisions."""

    def test_capacity_failure_fails_over(self, pipeline, run_context, engine):
        """An accepted zone change rewrites tfvars, re-plans and applies again."""
        engine.apply.side_effect = [CAPACITY_LINES, SUCCESS_LINES]
        run_context.prompter.choose_zone.return_value = "us-east-1b"
        store = run_context.state_store
        store.set = Mock(wraps=store.set)

        result = pipeline.deploy()

        assert result.succeeded
        assert len(result.failovers) == 1
        assert result.failovers[0].failed_zone == "us-east-1a"
        assert pipeline.tfvars.get("availability_zone") == "us-east-1b"
        assert run_context.availability_zone == "us-east-1b"
        assert engine.plan.call_count == 2
        assert [call.args[1] for call in store.set.call_args_list] == [
            DeploymentState.PARTIAL_DEPLOY, DeploymentState.DEPLOYED,
        ]

    def test_declined_failover_goes_to_rollback_decision(self, pipeline, run_context, engine):
        engine.apply.return_value = CAPACITY_LINES
        run_context.prompter.choose_zone.return_value = None

        result = pipeline.deploy()

        assert result.state is DeploymentState.PARTIAL_DEPLOY
        run_context.prompter.decide_rollback.assert_called_once()

    def test_other_failures_keep_partial_resources(self, pipeline, run_context, engine):
        engine.apply.return_value = DENIED_LINES

        result = pipeline.deploy()

        assert result.state is DeploymentState.PARTIAL_DEPLOY
        assert result.classification.category.value == "AccessDenied"
        assert result.failovers == []
        run_context.prompter.choose_zone.assert_not_called()
        assert run_context.state_store.get(KEY) is DeploymentState.PARTIAL_DEPLOY

    def test_rollback_after_failure(self, pipeline, run_context, engine):
        engine.apply.return_value = DENIED_LINES
        engine.destroy.return_value = Mock(ok=True)
        run_context.prompter.decide_rollback.return_value = True

        result = pipeline.deploy()

        assert result.state is DeploymentState.ROLLED_BACK
        engine.destroy.assert_called_once()

    def test_failover_limit(self, pipeline, run_context, engine):
        run_context.config.max_zone_failovers = 0
        engine.apply.return_value = CAPACITY_LINES

        result = pipeline.deploy()

        assert result.failovers == []
        run_context.prompter.choose_zone.assert_not_called()
        assert result.state is DeploymentState.PARTIAL_DEPLOY
