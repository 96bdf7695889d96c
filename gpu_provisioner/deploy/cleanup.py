"""
Dependency-ordered cleanup of everything a deployment may have left behind.

Stages run in a fixed order. Each stage re-discovers what is left, so a
stage that finds nothing is a no-op and a second run over the same scope
deletes nothing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..core.context import RunContext
from ..core.exceptions import ServiceError, UserCancelled
from ..core.models import DeploymentState, OperationResult, Resource
from ..core.polling import poll_until
from ..services.base import ResourceFilter
from ..services.inspector import CloudResourceInspector
from ..state.deployment_state import can_transition

logger = logging.getLogger(__name__)

# (stage number, title, resource types deleted in this order)
STAGE_PLAN: Tuple[Tuple[int, str, Tuple[str, ...]], ...] = (
    (1, "Compute, scaling groups and load balancers", (
        'autoscaling_group', 'instance', 'launch_template',
        'load_balancer_listener', 'load_balancer', 'target_group',
    )),
    (2, "NAT gateways and their Elastic IPs", ('nat_gateway', 'elastic_ip')),
    (3, "VPC endpoints", ('vpc_endpoint',)),
    (4, "VPC peering connections", ('vpc_peering',)),
    (5, "Managed data stores", ('db_instance', 'db_subnet_group', 'cache_cluster', 'cache_subnet_group')),
    (6, "Functions and container clusters", ('lambda_function', 'ecs_cluster')),
    (7, "Detached network interfaces", ('network_interface',)),
    (8, "Subnets", ('subnet',)),
    (9, "Route tables, security groups and network ACLs", ('route_table', 'security_group', 'network_acl')),
    (10, "Internet gateways", ('internet_gateway',)),
    (11, "VPCs", ('vpc',)),
    (12, "Logging, identity and event resources", (
        'flow_log', 'event_rule', 'log_group', 'instance_profile', 'iam_role', 'iam_policy',
    )),
)

# Resource type -> types it needs to exist while it does
RESOURCE_DEPENDENCIES: Dict[str, FrozenSet[str]] = {
    'autoscaling_group': frozenset({'launch_template', 'subnet', 'security_group', 'target_group'}),
    'instance': frozenset({'subnet', 'security_group', 'launch_template', 'instance_profile'}),
    'launch_template': frozenset({'security_group', 'instance_profile'}),
    'load_balancer_listener': frozenset({'load_balancer', 'target_group'}),
    'load_balancer': frozenset({'subnet', 'security_group'}),
    'target_group': frozenset({'vpc'}),
    'nat_gateway': frozenset({'subnet', 'elastic_ip', 'internet_gateway'}),
    'elastic_ip': frozenset(),
    'vpc_endpoint': frozenset({'vpc', 'subnet', 'security_group', 'route_table'}),
    'vpc_peering': frozenset({'vpc'}),
    'db_instance': frozenset({'db_subnet_group', 'security_group'}),
    'db_subnet_group': frozenset({'subnet'}),
    'cache_cluster': frozenset({'cache_subnet_group', 'security_group'}),
    'cache_subnet_group': frozenset({'subnet'}),
    'lambda_function': frozenset({'iam_role', 'subnet', 'security_group'}),
    'ecs_cluster': frozenset({'subnet', 'security_group'}),
    'network_interface': frozenset({'subnet', 'security_group'}),
    'subnet': frozenset({'vpc', 'network_acl'}),
    'route_table': frozenset({'vpc', 'internet_gateway'}),
    'security_group': frozenset({'vpc'}),
    'network_acl': frozenset({'vpc'}),
    'internet_gateway': frozenset({'vpc'}),
    'vpc': frozenset(),
    'flow_log': frozenset({'log_group', 'iam_role'}),
    'event_rule': frozenset(),
    'log_group': frozenset(),
    'instance_profile': frozenset({'iam_role'}),
    'iam_role': frozenset({'iam_policy'}),
    'iam_policy': frozenset(),
}


def deletion_order(stage_plan: Sequence[Tuple[int, str, Tuple[str, ...]]] = STAGE_PLAN) -> List[str]:
    """Every resource type in the order the stages delete them."""
    return [resource_type for _, _, types in stage_plan for resource_type in types]


@dataclass
class CleanupReport:
    """What one cleanup run did."""
    prefix: str
    dry_run: bool = False
    deleted: List[OperationResult] = field(default_factory=list)
    failed: List[OperationResult] = field(default_factory=list)
    skipped: List[OperationResult] = field(default_factory=list)
    planned: List[OperationResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    state_backup: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.errors

    def record(self, result: OperationResult) -> None:
        if self.dry_run:
            self.planned.append(result)
        elif not result.success:
            self.failed.append(result)
        elif result.skipped:
            self.skipped.append(result)
        else:
            self.deleted.append(result)


class CleanupOrchestrator:
    """Deletes resources matching a naming prefix in dependency order."""

    def __init__(
        self,
        context: RunContext,
        inspector: CloudResourceInspector,
        stage_plan: Sequence[Tuple[int, str, Tuple[str, ...]]] = STAGE_PLAN,
    ):
        self.context = context
        self.inspector = inspector
        self.stage_plan = tuple(stage_plan)

    def run(self, prefix: Optional[str] = None, dry_run: bool = False, force: bool = False) -> CleanupReport:
        """Run every stage for ``prefix``.

        Args:
            prefix: Naming prefix to match; defaults to the deployment's prefix
            dry_run: Discover and report without deleting
            force: Skip the confirmation and remove the local Terraform state

        Returns:
            CleanupReport with deleted, failed and skipped resources

        Raises:
            ServiceError: If the prefix is empty
            UserCancelled: If the operator declines the confirmation
        """
        prefix = prefix or self.context.name_prefix
        if not prefix:
            raise ServiceError("Refusing to clean up without a resource name prefix")

        if not dry_run and not force:
            question = f"Delete all resources matching '{prefix}' in {self.context.region}?"
            if not self.context.prompter.confirm(question, default=False):
                raise UserCancelled("Cleanup cancelled")

        report = CleanupReport(prefix=prefix, dry_run=dry_run)
        console = self.context.console
        for number, title, resource_types in self.stage_plan:
            console.print(f"[bold][{number}/{len(self.stage_plan)}][/bold] {title}")
            self.run_stage(number, resource_types, prefix, report, dry_run)

        if force and not dry_run:
            report.state_backup = self._remove_local_state()
        if not dry_run and report.succeeded:
            self._mark_destroyed(prefix)

        logger.info(
            f"Cleanup of '{prefix}': {len(report.deleted)} deleted, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped"
        )
        return report

    def run_stage(
        self,
        number: int,
        resource_types: Sequence[str],
        prefix: str,
        report: CleanupReport,
        dry_run: bool = False,
    ) -> None:
        """Delete one stage; dependency violations are retried once at the end of it."""
        # Earlier stages may have removed VPCs, so scope is recomputed per stage
        try:
            vpc_ids = self.inspector.project_vpc_ids(prefix)
        except ServiceError as e:
            logger.warning(f"Stage {number}: could not list project VPCs: {e}")
            report.errors.append(f"stage {number}: {e}")
            vpc_ids = []
        scope = ResourceFilter(prefix=prefix, vpc_ids=vpc_ids)

        retry: List[Resource] = []
        for resource_type in resource_types:
            for resource in self._discover(number, resource_type, scope, report):
                result = self._delete(resource, dry_run)
                if not result.success and 'DependencyViolation' in result.message:
                    logger.info(f"Stage {number}: {resource.resource_id} has dependents; retrying later")
                    retry.append(resource)
                    continue
                self._record(report, result)

        for resource in retry:
            self._record(report, self._delete(resource, dry_run))

    def _discover(self, number: int, resource_type: str, scope: ResourceFilter,
                  report: CleanupReport) -> List[Resource]:
        try:
            return self.inspector.manager_for(resource_type).discover_resources(resource_type, scope)
        except ServiceError as e:
            logger.warning(f"Stage {number}: discovery of {resource_type} failed: {e}")
            report.errors.append(f"stage {number} {resource_type}: {e}")
            return []

    def _delete(self, resource: Resource, dry_run: bool) -> OperationResult:
        if resource.service_type == 'network_interface' and not dry_run:
            self._wait_for_detach(resource)
        return self.inspector.delete(resource, dry_run=dry_run)

    def _wait_for_detach(self, resource: Resource) -> None:
        if resource.current_state != 'in-use':
            return
        waits = self.inspector.waits
        poll_until(
            lambda: self.inspector.ec2.network_interface_status(resource.resource_id),
            lambda status: status in (None, 'available'),
            interval=waits.interval,
            timeout=waits.eni_timeout,
            description=f"release of {resource.resource_id}",
        )

    def _record(self, report: CleanupReport, result: OperationResult) -> None:
        report.record(result)
        marker = "[dim]-[/dim]" if result.skipped else ("[green]✓[/green]" if result.success else "[red]✗[/red]")
        self.context.console.print(f"  {marker} {result.message}")

    def _remove_local_state(self) -> Optional[Path]:
        """Move terraform.tfstate aside so Terraform forgets the deleted resources."""
        state_file = Path(self.context.config.working_dir) / "terraform.tfstate"
        if not state_file.exists():
            return None
        backup = state_file.with_name(f"terraform.tfstate.cleanup.{datetime.now().strftime('%Y%m%d_%H%M%S')}")
        state_file.replace(backup)
        logger.info(f"Moved {state_file} to {backup}")
        return backup

    def _mark_destroyed(self, prefix: str) -> None:
        if prefix != self.context.project_key:
            return
        store = self.context.state_store
        current = store.get(self.context.project_key)
        if can_transition(current, DeploymentState.DESTROYED):
            store.set(self.context.project_key, DeploymentState.DESTROYED)
