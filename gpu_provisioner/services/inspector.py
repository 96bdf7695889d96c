"""
Cloud resource inspector: structured existence facts for the pre-flight battery.
"""
import ipaddress
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .autoscaling import AutoScalingServiceManager
from .base import BaseServiceManager, ResourceFilter, WaitSettings, error_code
from .ec2 import EC2ServiceManager
from .ecs import ECSServiceManager
from .elasticache import ElastiCacheServiceManager
from .elb import ELBServiceManager
from .events import EventsServiceManager
from .iam import IAMServiceManager
from .lambda_functions import LambdaServiceManager
from .logs import LogsServiceManager
from .quotas import ServiceQuotasManager
from .rds import RDSServiceManager
from ..core.exceptions import ServiceError
from ..core.models import OperationResult, Resource

logger = logging.getLogger(__name__)

# (service code, quota code, value assumed when the quota cannot be read)
ELASTIC_IP_QUOTA = ('ec2', 'L-0263D0A3', 5)
VPC_QUOTA = ('vpc', 'L-F678F1CE', 5)

# Network resources removed, in order, before an orphaned VPC itself
VPC_TEARDOWN_ORDER = (
    'nat_gateway', 'vpc_endpoint', 'network_interface', 'subnet', 'route_table',
    'security_group', 'network_acl', 'internet_gateway', 'vpc',
)


@dataclass
class CapacityUsage:
    """Usage of a capacity-limited resource against its quota."""
    limit: int
    in_use: int
    reclaimable: List[Resource] = field(default_factory=list)   # Unused, matching the convention

    @property
    def available(self) -> int:
        return max(self.limit - self.in_use, 0)


@dataclass
class SubnetCollision:
    """An existing subnet that overlaps a requested CIDR."""
    requested_cidr: str
    subnet_id: str
    vpc_id: str
    existing_cidr: str


class CloudResourceInspector:
    """Typed facade over the service managers used by checks and the quota advisor."""

    def __init__(self, session: boto3.Session, region: str, waits: Optional[WaitSettings] = None):
        self.session = session
        self.region = region
        self.waits = waits or WaitSettings()

        self.ec2 = EC2ServiceManager(session, region, self.waits)
        self.iam = IAMServiceManager(session, region, self.waits)
        self.logs = LogsServiceManager(session, region, self.waits)
        self.events = EventsServiceManager(session, region, self.waits)
        self.quotas = ServiceQuotasManager(session, region, self.waits)
        self.autoscaling = AutoScalingServiceManager(session, region, self.waits)
        self.elb = ELBServiceManager(session, region, self.waits)
        self.rds = RDSServiceManager(session, region, self.waits)
        self.elasticache = ElastiCacheServiceManager(session, region, self.waits)
        self.lambda_functions = LambdaServiceManager(session, region, self.waits)
        self.ecs = ECSServiceManager(session, region, self.waits)

    @property
    def managers(self) -> List[BaseServiceManager]:
        return [
            self.ec2, self.iam, self.logs, self.events, self.autoscaling,
            self.elb, self.rds, self.elasticache, self.lambda_functions, self.ecs,
        ]

    def manager_for(self, resource_type: str) -> BaseServiceManager:
        for manager in self.managers:
            if resource_type in manager.resource_types:
                return manager
        raise ServiceError(f"No service manager handles resource type '{resource_type}'")

    @contextmanager
    def _inspecting(self, what: str):
        try:
            yield
        except (ClientError, BotoCoreError) as e:
            raise ServiceError(f"Failed to inspect {what}: {e}", details=error_code(e) or str(e))

    # Capacity

    def quota_value(self, service_code: str, quota_code: str, default: Optional[float] = None) -> Optional[float]:
        return self.quotas.get_quota_value(service_code, quota_code, default)

    def elastic_ip_usage(self, prefix: str) -> CapacityUsage:
        with self._inspecting("Elastic IP usage"):
            service_code, quota_code, default = ELASTIC_IP_QUOTA
            limit = int(self.quota_value(service_code, quota_code, default))
            addresses = self.ec2.list_addresses()
            reclaimable = [
                address for address in addresses
                if not address.metadata.get('association_id')
                and ResourceFilter(prefix).matches_name(address.tags.get('Name'))
            ]
        return CapacityUsage(limit=limit, in_use=len(addresses), reclaimable=reclaimable)

    def vpc_usage(self, prefix: str) -> CapacityUsage:
        """VPC count against quota; project VPCs without instances are reclaimable."""
        with self._inspecting("VPC usage"):
            service_code, quota_code, default = VPC_QUOTA
            limit = int(self.quota_value(service_code, quota_code, default))
            vpcs = self.ec2.list_vpcs()
            reclaimable = [
                vpc for vpc in vpcs
                if not vpc.metadata['is_default']
                and ResourceFilter(prefix).matches_name(vpc.tags.get('Name'))
                and self.ec2.count_instances(vpc.resource_id) == 0
            ]
        return CapacityUsage(limit=limit, in_use=len(vpcs), reclaimable=reclaimable)

    # Existence

    def existing_log_groups(self, names: Iterable[str]) -> List[str]:
        with self._inspecting("log groups"):
            return [name for name in names if self.logs.log_group_exists(name)]

    def existing_policies(self, names: Iterable[str]) -> Dict[str, Resource]:
        with self._inspecting("IAM policies"):
            found = {}
            for name in names:
                policy = self.iam.find_policy(name)
                if policy is not None:
                    found[name] = policy
            return found

    def existing_roles(self, names: Iterable[str]) -> List[Resource]:
        with self._inspecting("IAM roles"):
            return [role for role in (self.iam.get_role(name) for name in names) if role]

    def existing_instance_profiles(self, names: Iterable[str]) -> List[Resource]:
        with self._inspecting("instance profiles"):
            return [
                profile for profile in (self.iam.get_instance_profile(name) for name in names)
                if profile
            ]

    def existing_event_rules(self, names: Iterable[str]) -> List[Resource]:
        with self._inspecting("EventBridge rules"):
            return [self.events.get_rule(name) for name in names if self.events.rule_exists(name)]

    # Networking

    def subnet_collisions(self, cidrs: Iterable[str]) -> List[SubnetCollision]:
        """Existing subnets whose ranges overlap any of ``cidrs``."""
        requested = [ipaddress.ip_network(cidr) for cidr in cidrs]
        if not requested:
            return []
        with self._inspecting("subnets"):
            subnets = self.ec2.list_subnets()
        collisions = []
        for network in requested:
            for subnet in subnets:
                existing = ipaddress.ip_network(subnet.metadata['cidr_block'])
                if network.overlaps(existing):
                    collisions.append(SubnetCollision(
                        requested_cidr=str(network),
                        subnet_id=subnet.resource_id,
                        vpc_id=subnet.metadata['vpc_id'],
                        existing_cidr=str(existing),
                    ))
        return collisions

    def vpc_subnets(self, vpc_id: str) -> List[Resource]:
        with self._inspecting(f"subnets of {vpc_id}"):
            return [subnet for subnet in self.ec2.list_subnets() if subnet.metadata['vpc_id'] == vpc_id]

    def used_cidrs(self) -> List[str]:
        with self._inspecting("subnets"):
            return [subnet.metadata['cidr_block'] for subnet in self.ec2.list_subnets()]

    def vpc_has_internet_gateway(self, vpc_id: str) -> bool:
        with self._inspecting(f"internet gateways of {vpc_id}"):
            return bool(self.ec2.internet_gateway_ids(vpc_id))

    def project_vpc_ids(self, prefix: str) -> List[str]:
        with self._inspecting("project VPCs"):
            return [
                vpc.resource_id
                for vpc in self.ec2.discover_resources('vpc', ResourceFilter(prefix))
            ]

    # Compute

    def available_zones(self) -> List[str]:
        with self._inspecting("availability zones"):
            return self.ec2.available_zones()

    def instance_type_vcpus(self, instance_type: str) -> Optional[int]:
        with self._inspecting(f"instance type {instance_type}"):
            return self.ec2.instance_type_vcpus(instance_type)

    def instance_type_offered(self, instance_type: str) -> bool:
        with self._inspecting(f"offerings of {instance_type}"):
            return self.ec2.instance_type_offered(instance_type)

    # Mutations used by remediation strategies

    def delete(self, resource: Resource, dry_run: bool = False) -> OperationResult:
        return self.manager_for(resource.service_type).delete_resource(resource, dry_run=dry_run)

    def release_address(self, allocation_id: str) -> None:
        with self._inspecting(f"release of {allocation_id}"):
            self.ec2.release_address(allocation_id)

    def delete_vpc_with_dependencies(self, vpc_id: str) -> List[OperationResult]:
        """Delete an empty VPC after the network resources that depend on it.

        Raises:
            ServiceError: If any dependency or the VPC itself cannot be deleted
        """
        scope = ResourceFilter(prefix='', vpc_ids=[vpc_id])
        results = []
        for resource_type in VPC_TEARDOWN_ORDER:
            if resource_type == 'vpc':
                resources = [vpc for vpc in self.ec2.list_vpcs() if vpc.resource_id == vpc_id]
            else:
                resources = self.ec2.discover_resources(resource_type, scope)
            for resource in resources:
                result = self.ec2.delete_resource(resource)
                results.append(result)
                if not result.success:
                    raise ServiceError(result.message)
        return results
