"""Operator decision points for deployment runs."""

from enum import Enum
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from gpu_provisioner.core.exceptions import UserCancelled
from gpu_provisioner.core.models import PlanAction, ResourcePlanSummary, ZoneFailoverRequest


class FailurePolicy(str, Enum):
    """What to do with resources left by a failed apply."""
    ASK = "ask"
    ROLLBACK = "rollback"
    KEEP = "keep"


class Prompter:
    """Asks the operator at every checkpoint where a run may be abandoned."""

    def __init__(self, console: Console, assume_yes: bool = False, on_failure: FailurePolicy = FailurePolicy.ASK):
        """Initialize the prompter.

        Args:
            console: Rich console for output
            assume_yes: Answer confirmations with yes and pick defaults
            on_failure: Decision to take after a failed apply without asking
        """
        self.console = console
        self.assume_yes = assume_yes
        self.on_failure = FailurePolicy(on_failure)

    def _ask(self, prompt_text: str, choices: List[str], default: str) -> str:
        try:
            return Prompt.ask(prompt_text, console=self.console, choices=choices, default=default)
        except KeyboardInterrupt:
            self.console.print()
            raise UserCancelled()

    def confirm(self, prompt_text: str, default: bool = False) -> bool:
        """Yes/no question; Ctrl+C cancels the run.

        Raises:
            UserCancelled: If the operator presses Ctrl+C
        """
        if self.assume_yes:
            return True
        try:
            return Confirm.ask(prompt_text, console=self.console, default=default)
        except KeyboardInterrupt:
            self.console.print()
            raise UserCancelled()

    def choose_zone(self, request: ZoneFailoverRequest) -> Optional[str]:
        """Let the operator pick an alternate zone, or None to stop."""
        self.console.print()
        self.console.print(Panel(
            f"No capacity in [bold]{request.failed_zone or 'the requested zone'}[/bold] for this instance type.",
            title="Capacity error: zone failover available",
            border_style="yellow",
        ))
        if self.assume_yes:
            self.console.print(f"Using [green]{request.candidate_zones[0]}[/green]")
            return request.candidate_zones[0]

        for index, zone in enumerate(request.candidate_zones, start=1):
            self.console.print(f"  {index}) {zone}")
        cancel = str(len(request.candidate_zones) + 1)
        self.console.print(f"  {cancel}) Cancel")

        choice = self._ask(
            "Select zone",
            choices=[str(i) for i in range(1, len(request.candidate_zones) + 2)],
            default="1",
        )
        if choice == cancel:
            return None
        return request.candidate_zones[int(choice) - 1]

    def decide_rollback(self, category: str, error_text: str, created_count: int) -> bool:
        """Ask whether to roll back after a failed apply.

        Returns:
            True to destroy what was created, False to keep partial resources
        """
        if self.on_failure is FailurePolicy.ROLLBACK:
            return True
        if self.on_failure is FailurePolicy.KEEP:
            return False

        self.console.print()
        self.console.print(Panel(
            error_text or "No error output captured",
            title=f"Deployment failed: {category}",
            border_style="red",
        ))
        self.console.print(f"{created_count} resource(s) were created before the failure.")
        if self.assume_yes:
            self.console.print("[yellow]Keeping partial resources; run 'gpu-provisioner rollback' to remove them[/yellow]")
            return False

        self.console.print("  1) Roll back (terraform destroy)")
        self.console.print("  2) Keep partial resources")
        return self._ask("Select option", choices=["1", "2"], default="2") == "1"

    def choose_plan_action(self, summary: ResourcePlanSummary) -> PlanAction:
        """Ask how to proceed when a plan modifies existing resources."""
        table = Table(title="Plan changes existing resources")
        table.add_column("Create", justify="right", style="green")
        table.add_column("Update", justify="right", style="cyan")
        table.add_column("Replace", justify="right", style="yellow")
        table.add_column("Destroy", justify="right", style="red")
        table.add_row(
            str(summary.to_create), str(summary.to_update),
            str(summary.to_replace), str(summary.to_destroy),
        )
        self.console.print(table)
        if self.assume_yes:
            self.console.print("[yellow]Unattended run: applying only new resources; existing ones are left unchanged[/yellow]")
            return PlanAction.CREATE_ONLY

        self.console.print("  1) Apply all changes")
        self.console.print("  2) Create only new resources")
        self.console.print("  3) Cancel deployment")
        choice = self._ask("Select option", choices=["1", "2", "3"], default="1")
        return {"1": PlanAction.PROCEED, "2": PlanAction.CREATE_ONLY, "3": PlanAction.CANCEL}[choice]
