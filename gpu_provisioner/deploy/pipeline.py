"""
Deployment pipeline: quota selection, pre-flight, plan, apply and recovery.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .classifier import Classification, FailureClassifier
from .failover import ZoneFailoverNegotiator
from .monitor import ApplyMonitor, ApplyOutcome, ProgressRenderer
from .rollback import RollbackCoordinator
from ..core.context import RunContext
from ..core.exceptions import PreflightBlocked, StateError, UserCancelled
from ..core.models import (
    DeploymentState, InstanceSelection, PlanAction, PricingModel, ResourcePlanSummary, ZoneFailoverRequest,
)
from ..engine.terraform import TerraformRunner
from ..engine.tfvars import TfvarsEditor
from ..preflight.quota import QuotaAdvisor
from ..preflight.scanner import ConflictScanner, ScanReport
from ..services.inspector import CloudResourceInspector
from ..state.deployment_state import can_transition
from ..state.reports import ReportWriter

logger = logging.getLogger(__name__)


@dataclass
class DeploymentResult:
    """Everything one deploy run decided and observed."""
    state: DeploymentState
    selection: Optional[InstanceSelection] = None
    scan: Optional[ScanReport] = None
    plan: Optional[ResourcePlanSummary] = None
    outcome: Optional[ApplyOutcome] = None
    classification: Optional[Classification] = None
    failovers: List[ZoneFailoverRequest] = field(default_factory=list)
    plan_only: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is DeploymentState.DEPLOYED


class DeploymentPipeline:
    """Runs one deployment for the run context's project and environment."""

    def __init__(
        self,
        context: RunContext,
        inspector: CloudResourceInspector,
        engine: TerraformRunner,
        tfvars: TfvarsEditor,
        scanner: Optional[ConflictScanner] = None,
        advisor: Optional[QuotaAdvisor] = None,
        classifier: Optional[FailureClassifier] = None,
        negotiator: Optional[ZoneFailoverNegotiator] = None,
        rollback: Optional[RollbackCoordinator] = None,
        show_progress: bool = True,
    ):
        self.context = context
        self.config = context.config
        self.inspector = inspector
        self.engine = engine
        self.tfvars = tfvars
        reports = ReportWriter(context.reports_dir)
        self.scanner = scanner or ConflictScanner.with_default_checks(context, inspector, engine, tfvars)
        self.advisor = advisor or QuotaAdvisor(
            inspector, context.region, reports, increase_target=self.config.quota_increase_target
        )
        self.classifier = classifier or FailureClassifier()
        self.negotiator = negotiator or ZoneFailoverNegotiator(inspector, context.prompter)
        self.rollback = rollback or RollbackCoordinator(context, engine)
        self.show_progress = show_progress

    @property
    def plan_file(self) -> str:
        return self.config.plan_file

    def select_instance(self) -> InstanceSelection:
        """Pick a quota-feasible instance type and write it to tfvars.

        Raises:
            QuotaExhausted: If no type and pricing model fits
        """
        selection = self.advisor.select(self.config.instance_type)
        self.context.selection = selection
        reason = f"quota selection: {selection.vcpus} vCPUs, {selection.pricing_model.value}"
        if selection.substituted:
            reason += f" (substituted for {selection.requested_instance_type})"
        self.tfvars.update(
            {
                'instance_type': selection.instance_type,
                'use_spot': selection.pricing_model is PricingModel.SPOT,
            },
            reason=reason,
        )
        return selection

    def preflight(self, allow_override: bool = False) -> ScanReport:
        """Run the conflict scan.

        Raises:
            PreflightBlocked: If a blocking check is left Blocked without override
        """
        report = self.scanner.scan(allow_override=allow_override)
        if not report.passed:
            raise PreflightBlocked(report.blocked, report.report_path)
        return report

    def plan(self) -> Optional[ResourcePlanSummary]:
        """Write the plan and let the operator review changes to existing resources.

        Raises:
            EngineError: If planning fails
            UserCancelled: If the operator cancels at plan review
        """
        self.engine.plan(self.plan_file)
        summary = self.engine.summarize_plan(self.plan_file)
        if summary is None or not summary.touches_existing:
            return summary

        action = self.context.prompter.choose_plan_action(summary)
        if action is PlanAction.PROCEED:
            return summary
        if action is PlanAction.CREATE_ONLY and summary.create_addresses:
            logger.info(f"Re-planning for {len(summary.create_addresses)} new resource(s) only")
            self.engine.plan(self.plan_file, targets=list(summary.create_addresses))
            return self.engine.summarize_plan(self.plan_file)

        self.engine.remove_plan(self.plan_file)
        raise UserCancelled("Deployment cancelled at plan review")

    def apply(self, summary: Optional[ResourcePlanSummary]) -> ApplyOutcome:
        """Apply the saved plan while monitoring its output stream."""
        total = summary.to_create + summary.to_replace if summary is not None else None
        monitor = ApplyMonitor(total, self.config.default_total_resources)
        stream = self.engine.apply(self.plan_file)
        if not self.show_progress:
            return monitor.consume(stream)

        with ProgressRenderer(self.context.console, monitor.progress.total_resources) as renderer:
            monitor.on_progress = renderer.update
            return monitor.consume(stream)

    def ensure_deployable(self, current: DeploymentState) -> None:
        """Refuse to apply when neither outcome of the apply could be recorded.

        Raises:
            StateError: If the current state does not allow Deployed, Failed and PartialDeploy
        """
        outcomes = (DeploymentState.DEPLOYED, DeploymentState.FAILED, DeploymentState.PARTIAL_DEPLOY)
        if all(can_transition(current, state) for state in outcomes):
            return
        raise StateError(
            f"Deployment is in state {current.value}; run 'gpu-provisioner rollback' or "
            f"'gpu-provisioner cleanup --prefix {self.context.name_prefix} --region {self.config.region}' "
            f"before deploying again",
            current.value,
        )

    def deploy(self, plan_only: bool = False, allow_override: bool = False) -> DeploymentResult:
        """Run the whole deployment.

        Args:
            plan_only: Stop after the plan has been written and reviewed
            allow_override: Proceed even when pre-flight checks stay Blocked

        Returns:
            DeploymentResult; ``state`` is the final deployment state

        Raises:
            QuotaExhausted: If no instance type fits the account's quotas
            PreflightBlocked: If the conflict scan fails closed
            EngineError: If Terraform cannot initialise or plan
            UserCancelled: If the operator cancels
            StateError: If the recorded state cannot accept the result of a new apply
        """
        key = self.context.project_key
        result = DeploymentResult(state=self.context.state_store.get(key), plan_only=plan_only)
        if not plan_only:
            self.ensure_deployable(result.state)

        result.selection = self.select_instance()
        self.engine.init()
        result.scan = self.preflight(allow_override)
        result.plan = self.plan()
        if plan_only:
            logger.info(f"Plan written to {self.plan_file}; stopping before apply")
            return result

        while True:
            result.outcome = self.apply(result.plan)
            if result.outcome.success:
                self.context.state_store.set(key, DeploymentState.DEPLOYED)
                self.engine.remove_plan(self.plan_file)
                result.state = DeploymentState.DEPLOYED
                return result

            result.classification = self.classifier.classify_text(result.outcome.error_text)
            request = None
            if len(result.failovers) < self.config.max_zone_failovers:
                request = self.negotiator.negotiate(result.classification)
            if request is None:
                result.state = self.rollback.handle_failure(result.outcome, result.classification)
                return result

            result.failovers.append(request)
            self.rollback.record_failure(result.outcome)
            self.context.availability_zone = request.selected_zone
            self.tfvars.update(
                {'availability_zone': request.selected_zone},
                reason=f"zone failover from {request.failed_zone or 'unknown zone'}",
            )
            result.plan = self.plan()
