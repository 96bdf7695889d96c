"""
The pre-flight check battery.

Each check inspects one scope through the CloudResourceInspector and names
the strategies that may remediate what it finds.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List

from ..core.context import RunContext
from ..core.models import ConflictKind, Finding, ResourceScope
from ..engine.terraform import TerraformRunner
from ..engine.tfvars import TfvarsEditor
from ..services.inspector import ELASTIC_IP_QUOTA, VPC_QUOTA, CloudResourceInspector
from .strategies import (
    CapacityReport, CidrConflictReport, DetachAndDelete, ExistingResourceReport,
    ImportExistingResources, ReleaseUnusedResources, RemediationStrategy, RenameWithSuffix,
    ReuseExistingNetwork, SelectAlternateCidrs,
)

logger = logging.getLogger(__name__)

# Planned log group names and their Terraform addresses
LOG_GROUP_ADDRESSES = {
    '/aws/vpc/{prefix}-flow-logs': 'module.gpu_infrastructure.aws_cloudwatch_log_group.vpc_flow_logs[0]',
    '/aws/lambda/{prefix}-start-instances': 'module.gpu_infrastructure.aws_cloudwatch_log_group.scheduler_start[0]',
    '/aws/lambda/{prefix}-stop-instances': 'module.gpu_infrastructure.aws_cloudwatch_log_group.scheduler_stop[0]',
}

# Planned IAM policy names and their Terraform addresses
IAM_POLICY_ADDRESSES = {
    '{prefix}-scheduler-logs-policy': 'module.gpu_infrastructure.aws_iam_policy.scheduler_logs[0]',
    '{prefix}-scheduler-ec2-policy': 'module.gpu_infrastructure.aws_iam_policy.scheduler_ec2[0]',
}

ORPHAN_ROLE_SUFFIXES = ('instance-role', 'scheduler-lambda-role', 'vpc-flow-logs-role')
ORPHAN_PROFILE_SUFFIXES = ('instance-profile',)
ORPHAN_RULE_SUFFIXES = ('start-instances', 'stop-instances')


class PreflightCheck(ABC):
    """A named inspection plus the remediation strategies for its conflicts."""

    name: str = "check"
    kind: ConflictKind = ConflictKind.ALREADY_EXISTS
    resource_type: str = "resource"
    blocking: bool = True

    def __init__(
        self,
        context: RunContext,
        inspector: CloudResourceInspector,
        engine: TerraformRunner,
        tfvars: TfvarsEditor,
    ):
        self.context = context
        self.inspector = inspector
        self.engine = engine
        self.tfvars = tfvars

    @property
    def prefix(self) -> str:
        return self.context.name_prefix

    def scope(self) -> ResourceScope:
        return ResourceScope(self.resource_type, self.prefix)

    @abstractmethod
    def inspect(self) -> Finding:
        """Look at the scope as it is right now."""
        pass

    @abstractmethod
    def strategies(self) -> List[RemediationStrategy]:
        """Strategies for this check, least destructive first."""
        pass


class VpcLimitCheck(PreflightCheck):
    name = "vpc-limit"
    kind = ConflictKind.CAPACITY_LIMIT
    resource_type = "vpc"

    def inspect(self) -> Finding:
        usage = self.inspector.vpc_usage(self.prefix)
        required = self.context.config.required_vpcs
        if usage.available >= required:
            return Finding([], f"{usage.in_use}/{usage.limit} VPCs in use", {'usage': usage})
        return Finding(
            [vpc.resource_id for vpc in usage.reclaimable] or [f"vpc-quota:{usage.in_use}/{usage.limit}"],
            f"VPC limit reached: {usage.in_use}/{usage.limit} in use, {required} required",
            {'usage': usage},
        )

    def strategies(self) -> List[RemediationStrategy]:
        region = self.context.region
        return [
            ReleaseUnusedResources(
                'VPC', self.context.config.required_vpcs,
                lambda vpc: self.inspector.delete_vpc_with_dependencies(vpc.resource_id),
            ),
            CapacityReport(
                'VPC', self.context.config.required_vpcs, VPC_QUOTA[:2], region,
                f"aws ec2 describe-vpcs --region {region} "
                f"--query 'Vpcs[?IsDefault==`false`].[VpcId,Tags[?Key==`Name`].Value|[0]]' --output table",
                f"gpu-provisioner cleanup --prefix {self.prefix} --region {region} --dry-run",
            ),
        ]


class ElasticIpLimitCheck(PreflightCheck):
    name = "elastic-ip-limit"
    kind = ConflictKind.CAPACITY_LIMIT
    resource_type = "elastic_ip"

    def inspect(self) -> Finding:
        usage = self.inspector.elastic_ip_usage(self.prefix)
        required = self.context.config.required_elastic_ips
        if usage.available >= required:
            return Finding([], f"{usage.in_use}/{usage.limit} Elastic IPs in use", {'usage': usage})
        return Finding(
            [address.resource_id for address in usage.reclaimable] or [f"eip-quota:{usage.in_use}/{usage.limit}"],
            f"Elastic IP limit: {usage.available} available of {usage.limit}, {required} required",
            {'usage': usage},
        )

    def strategies(self) -> List[RemediationStrategy]:
        region = self.context.region
        return [
            ReleaseUnusedResources(
                'Elastic IP', self.context.config.required_elastic_ips,
                lambda address: self.inspector.release_address(address.resource_id),
            ),
            CapacityReport(
                'Elastic IP', self.context.config.required_elastic_ips, ELASTIC_IP_QUOTA[:2], region,
                f"aws ec2 describe-addresses --region {region} "
                f"--query 'Addresses[?AssociationId==null].[AllocationId,PublicIp]' --output table",
                f"aws ec2 release-address --allocation-id <allocation-id> --region {region}",
            ),
        ]


class _AlreadyExistsCheck(PreflightCheck):
    """Planned names that already exist and are not tracked in Terraform state."""

    kind = ConflictKind.ALREADY_EXISTS
    address_table: Dict[str, str] = {}

    def planned(self) -> Dict[str, str]:
        """Planned name to Terraform address, for the current prefix."""
        return {
            name.format(prefix=self.prefix): address
            for name, address in self.address_table.items()
        }

    @abstractmethod
    def existing(self, names: List[str]) -> Dict[str, str]:
        """Existing names mapped to the identifier Terraform imports them by."""
        pass

    def inspect(self) -> Finding:
        planned = self.planned()
        identifiers = self.existing(list(planned))
        if not identifiers:
            return Finding([], f"No existing {self.resource_type}s", {})

        tracked = set(self.engine.state_list())
        untracked = [name for name in identifiers if planned[name] not in tracked]
        return Finding(
            untracked,
            f"{len(untracked)} {self.resource_type}(s) exist outside Terraform state: {', '.join(untracked)}"
            if untracked else f"Existing {self.resource_type}s are tracked in state",
            {'addresses': planned, 'identifiers': identifiers},
        )

    def strategies(self) -> List[RemediationStrategy]:
        return [
            ImportExistingResources(self.engine),
            RenameWithSuffix(self.context, self.tfvars),
            ExistingResourceReport(self.context, self.delete_command),
        ]

    @abstractmethod
    def delete_command(self, name: str, identifier: str) -> str:
        pass


class LogGroupCollisionCheck(_AlreadyExistsCheck):
    name = "log-groups-exist"
    resource_type = "log_group"
    address_table = LOG_GROUP_ADDRESSES

    def existing(self, names: List[str]) -> Dict[str, str]:
        return {name: name for name in self.inspector.existing_log_groups(names)}

    def delete_command(self, name: str, identifier: str) -> str:
        return f"aws logs delete-log-group --log-group-name {name} --region {self.context.region}"


class IamPolicyCollisionCheck(_AlreadyExistsCheck):
    name = "iam-policies-exist"
    resource_type = "iam_policy"
    address_table = IAM_POLICY_ADDRESSES

    def existing(self, names: List[str]) -> Dict[str, str]:
        return {
            name: policy.metadata['arn']
            for name, policy in self.inspector.existing_policies(names).items()
        }

    def delete_command(self, name: str, identifier: str) -> str:
        return f"aws iam delete-policy --policy-arn {identifier}"


class SubnetCidrCheck(PreflightCheck):
    name = "subnet-cidr-conflicts"
    kind = ConflictKind.CIDR_OVERLAP
    resource_type = "subnet"

    def scope(self) -> ResourceScope:
        return ResourceScope(self.resource_type, ",".join(self.context.planned_subnet_cidrs) or "reused-network")

    def inspect(self) -> Finding:
        collisions = self.inspector.subnet_collisions(self.context.planned_subnet_cidrs)
        if not collisions:
            return Finding([], "Requested subnet ranges are free", {'collisions': []})
        return Finding(
            sorted({collision.requested_cidr for collision in collisions}),
            f"{len(collisions)} existing subnet(s) overlap requested ranges",
            {'collisions': collisions},
        )

    def strategies(self) -> List[RemediationStrategy]:
        return [
            ReuseExistingNetwork(self.context, self.inspector, self.tfvars),
            SelectAlternateCidrs(self.context, self.inspector, self.tfvars),
            CidrConflictReport(self.context),
        ]


class _OrphanCheck(PreflightCheck):
    """Leftovers of earlier runs; cleaned up on a best-effort basis."""

    blocking = False
    suffixes: tuple = ()

    def names(self) -> List[str]:
        return [f"{self.prefix}-{suffix}" for suffix in self.suffixes]

    @abstractmethod
    def find(self, names: List[str]) -> list:
        pass

    def inspect(self) -> Finding:
        resources = self.find(self.names())
        return Finding(
            [resource.resource_id for resource in resources],
            f"{len(resources)} orphaned {self.resource_type}(s)",
            {'resources': resources},
        )

    def strategies(self) -> List[RemediationStrategy]:
        return [DetachAndDelete(self.inspector)]


class OrphanedRoleCheck(_OrphanCheck):
    name = "orphaned-iam-roles"
    kind = ConflictKind.ORPHANED_ROLE
    resource_type = "iam_role"
    suffixes = ORPHAN_ROLE_SUFFIXES

    def find(self, names: List[str]) -> list:
        return self.inspector.existing_roles(names)


class OrphanedInstanceProfileCheck(_OrphanCheck):
    name = "orphaned-instance-profiles"
    kind = ConflictKind.ORPHANED_ROLE
    resource_type = "instance_profile"
    suffixes = ORPHAN_PROFILE_SUFFIXES

    def find(self, names: List[str]) -> list:
        return self.inspector.existing_instance_profiles(names)


class OrphanedEventRuleCheck(_OrphanCheck):
    name = "orphaned-event-rules"
    kind = ConflictKind.ORPHANED_RULE
    resource_type = "event_rule"
    suffixes = ORPHAN_RULE_SUFFIXES

    def find(self, names: List[str]) -> list:
        return self.inspector.existing_event_rules(names)


DEFAULT_CHECKS = (
    VpcLimitCheck,
    ElasticIpLimitCheck,
    LogGroupCollisionCheck,
    IamPolicyCollisionCheck,
    SubnetCidrCheck,
    OrphanedInstanceProfileCheck,
    OrphanedRoleCheck,
    OrphanedEventRuleCheck,
)
