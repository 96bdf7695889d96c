"""
Rollback coordination after a failed or partial apply.
"""
import logging
from typing import Optional

from .classifier import Classification
from .monitor import ApplyOutcome
from ..core.context import RunContext
from ..core.exceptions import EngineError, StateError
from ..core.models import DeploymentState
from ..engine.terraform import TerraformRunner
from ..state.deployment_state import ROLLBACK_SOURCES, DeploymentStateStore

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """Records failed applies and tears them down through ``terraform destroy``.

    Rollback is never automatic: ``handle_failure`` always goes through the
    prompter, which either asks the operator or applies the policy they chose
    on the command line.
    """

    def __init__(
        self,
        context: RunContext,
        engine: TerraformRunner,
        store: Optional[DeploymentStateStore] = None,
        prompter=None,
    ):
        self.context = context
        self.engine = engine
        self.store = store or context.state_store
        self.prompter = prompter or context.prompter

    @property
    def project_key(self) -> str:
        return self.context.project_key

    def manual_cleanup_command(self) -> str:
        return (
            f"gpu-provisioner cleanup --prefix {self.context.name_prefix} "
            f"--region {self.context.region}"
        )

    def record_failure(self, outcome: ApplyOutcome) -> DeploymentState:
        """Persist PartialDeploy when anything was created, otherwise Failed."""
        state = DeploymentState.PARTIAL_DEPLOY if outcome.progress.created_count > 0 else DeploymentState.FAILED
        self.store.set(self.project_key, state)
        return state

    def handle_failure(self, outcome: ApplyOutcome, classification: Classification) -> DeploymentState:
        """Record the failure and let the operator choose rollback or keep.

        Returns:
            Final deployment state of the run
        """
        state = self.record_failure(outcome)
        rollback = self.prompter.decide_rollback(
            classification.category.value, classification.raw_message, outcome.progress.created_count
        )
        if rollback:
            return self.rollback()

        logger.info(f"Keeping partial resources; deployment state is {state.value}")
        self.context.console.print(
            "[yellow]Partial resources kept. Remove them later with 'gpu-provisioner rollback'.[/yellow]"
        )
        return state

    def rollback(self) -> DeploymentState:
        """Destroy everything Terraform tracks for this deployment.

        Returns:
            ROLLED_BACK, or ROLLBACK_FAILED with the plan file removed

        Raises:
            StateError: If the deployment is not in a state that can be rolled back
        """
        current = self.store.get(self.project_key)
        if current not in ROLLBACK_SOURCES:
            raise StateError(f"Nothing to roll back for {self.project_key} (state: {current.value})")

        self.context.console.print("[bold]Rolling back: running terraform destroy...[/bold]")
        try:
            result = self.engine.destroy()
            succeeded, output = result.ok, result.output
        except EngineError as e:
            succeeded, output = False, e.output or str(e)

        if succeeded:
            self.store.set(self.project_key, DeploymentState.ROLLED_BACK)
            self.engine.remove_plan(self.context.config.plan_file)
            self.context.console.print("[green]Rollback complete[/green]")
            return DeploymentState.ROLLED_BACK

        logger.error(f"terraform destroy failed for {self.project_key}: {output}")
        self.store.set(self.project_key, DeploymentState.ROLLBACK_FAILED)
        self.engine.remove_plan(self.context.config.plan_file)
        self.context.console.print("[red]Rollback failed.[/red] Remove the remaining resources manually:")
        self.context.console.print(f"  {self.manual_cleanup_command()}")
        return DeploymentState.ROLLBACK_FAILED
