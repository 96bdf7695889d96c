"""
IAM permission check for the identity a deployment runs as.

Simulates the actions the Terraform configuration and the cleanup stages
need and reports the ones that are denied.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from ..core.exceptions import ServiceError
from ..services.base import error_code
from ..services.inspector import CloudResourceInspector
from ..state.reports import ReportWriter

logger = logging.getLogger(__name__)

# simulate_principal_policy accepts a limited number of actions per call
SIMULATION_BATCH_SIZE = 20

REQUIRED_ACTIONS: Dict[str, Sequence[str]] = {
    'ec2': (
        'ec2:RunInstances', 'ec2:TerminateInstances', 'ec2:DescribeInstances',
        'ec2:DescribeInstanceTypes', 'ec2:DescribeInstanceTypeOfferings',
        'ec2:DescribeAvailabilityZones', 'ec2:CreateLaunchTemplate', 'ec2:DeleteLaunchTemplate',
        'ec2:CreateVpc', 'ec2:DeleteVpc', 'ec2:DescribeVpcs', 'ec2:ModifyVpcAttribute',
        'ec2:CreateSubnet', 'ec2:DeleteSubnet', 'ec2:DescribeSubnets',
        'ec2:CreateInternetGateway', 'ec2:AttachInternetGateway', 'ec2:DetachInternetGateway',
        'ec2:DeleteInternetGateway', 'ec2:CreateNatGateway', 'ec2:DeleteNatGateway',
        'ec2:DescribeNatGateways', 'ec2:AllocateAddress', 'ec2:ReleaseAddress',
        'ec2:DescribeAddresses', 'ec2:CreateRouteTable', 'ec2:DeleteRouteTable',
        'ec2:AssociateRouteTable', 'ec2:DisassociateRouteTable', 'ec2:CreateRoute',
        'ec2:CreateSecurityGroup', 'ec2:DeleteSecurityGroup', 'ec2:AuthorizeSecurityGroupIngress',
        'ec2:AuthorizeSecurityGroupEgress', 'ec2:RevokeSecurityGroupIngress',
        'ec2:RevokeSecurityGroupEgress', 'ec2:DescribeNetworkInterfaces',
        'ec2:DeleteNetworkInterface', 'ec2:CreateFlowLogs', 'ec2:DeleteFlowLogs',
        'ec2:CreateTags', 'ec2:RequestSpotInstances',
    ),
    'iam': (
        'iam:CreateRole', 'iam:DeleteRole', 'iam:GetRole', 'iam:PassRole',
        'iam:AttachRolePolicy', 'iam:DetachRolePolicy', 'iam:PutRolePolicy', 'iam:DeleteRolePolicy',
        'iam:CreateInstanceProfile', 'iam:DeleteInstanceProfile', 'iam:GetInstanceProfile',
        'iam:AddRoleToInstanceProfile', 'iam:RemoveRoleFromInstanceProfile',
        'iam:CreatePolicy', 'iam:DeletePolicy', 'iam:GetPolicy', 'iam:ListPolicyVersions',
        'iam:DeletePolicyVersion',
    ),
    'logs': (
        'logs:CreateLogGroup', 'logs:DeleteLogGroup', 'logs:DescribeLogGroups',
        'logs:PutRetentionPolicy',
    ),
    'events': (
        'events:PutRule', 'events:DeleteRule', 'events:DescribeRule',
        'events:PutTargets', 'events:RemoveTargets', 'events:ListTargetsByRule',
    ),
    'lambda': (
        'lambda:CreateFunction', 'lambda:DeleteFunction', 'lambda:GetFunction',
        'lambda:AddPermission', 'lambda:RemovePermission',
    ),
    'service-quotas': (
        'servicequotas:GetServiceQuota', 'servicequotas:RequestServiceQuotaIncrease',
    ),
}


@dataclass
class PermissionReport:
    """Result of one permission simulation."""
    principal: str
    missing: List[str] = field(default_factory=list)
    unverified: bool = False
    report_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return not self.missing


class PermissionChecker:
    """Simulates the required actions against the caller's effective policies."""

    def __init__(
        self,
        inspector: CloudResourceInspector,
        reports: Optional[ReportWriter] = None,
        required: Optional[Dict[str, Sequence[str]]] = None,
    ):
        self.inspector = inspector
        self.reports = reports
        self.required = required if required is not None else REQUIRED_ACTIONS

    @property
    def actions(self) -> List[str]:
        return [action for actions in self.required.values() for action in actions]

    def check(self) -> PermissionReport:
        """Simulate every required action for the calling identity.

        Returns:
            PermissionReport listing denied actions. When the identity may not
            run the simulation itself the report is marked unverified.

        Raises:
            ServiceError: If the caller identity cannot be determined
        """
        try:
            principal = self.inspector.iam.caller_arn()
        except (ClientError, BotoCoreError) as e:
            raise ServiceError(f"Failed to determine caller identity: {e}", details=error_code(e) or str(e))

        report = PermissionReport(principal=principal)
        actions = self.actions
        try:
            for start in range(0, len(actions), SIMULATION_BATCH_SIZE):
                batch = actions[start:start + SIMULATION_BATCH_SIZE]
                decisions = self.inspector.iam.simulate_actions(principal, batch)
                for action in batch:
                    if decisions.get(action) != 'allowed':
                        report.missing.append(action)
        except ClientError as e:
            if error_code(e) not in ('AccessDenied', 'AccessDeniedException'):
                raise ServiceError(f"Permission simulation failed: {e}", details=error_code(e))
            logger.warning(f"{principal} may not simulate policies; permissions are unverified")
            report.missing = []
            report.unverified = True

        if report.missing:
            logger.warning(f"{len(report.missing)} required action(s) denied for {principal}")
        else:
            logger.info(f"Permission check for {principal}: {'unverified' if report.unverified else 'ok'}")

        if self.reports is not None:
            report.report_path = self.reports.write_permissions(principal, report.missing, report.unverified)
        return report
