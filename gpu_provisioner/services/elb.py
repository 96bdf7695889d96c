"""
Elastic Load Balancing (v2) service manager.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class ELBServiceManager(BaseServiceManager):
    """Service manager for application/network load balancers and target groups."""

    resource_types = ('load_balancer_listener', 'load_balancer', 'target_group')

    @property
    def service_name(self) -> str:
        return 'elbv2'

    def _project_load_balancers(self, resource_filter: ResourceFilter) -> List[dict]:
        return [
            balancer for balancer in self._paginate('describe_load_balancers', 'LoadBalancers')
            if resource_filter.matches_name(balancer['LoadBalancerName'])
            or balancer.get('VpcId') in resource_filter.vpc_ids
        ]

    def _discover_load_balancer_listener(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for balancer in self._project_load_balancers(resource_filter):
            listeners = self._paginate(
                'describe_listeners', 'Listeners', LoadBalancerArn=balancer['LoadBalancerArn']
            )
            for listener in listeners:
                resources.append(self._resource(
                    'load_balancer_listener', listener['ListenerArn'], 'active',
                    name=f"{balancer['LoadBalancerName']}:{listener.get('Port')}",
                ))
        return resources

    def _discover_load_balancer(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'load_balancer', balancer['LoadBalancerArn'],
                balancer.get('State', {}).get('Code', 'unknown'),
                name=balancer['LoadBalancerName'], vpc_id=balancer.get('VpcId'),
            )
            for balancer in self._project_load_balancers(resource_filter)
        ]

    def _discover_target_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'target_group', group['TargetGroupArn'], 'available',
                name=group['TargetGroupName'], vpc_id=group.get('VpcId'),
            )
            for group in self._paginate('describe_target_groups', 'TargetGroups')
            if resource_filter.matches_name(group['TargetGroupName'])
            or group.get('VpcId') in resource_filter.vpc_ids
        ]

    def _delete_load_balancer_listener(self, resource: Resource) -> str:
        self.client.delete_listener(ListenerArn=resource.resource_id)
        return f"Deleted listener {resource.name}"

    def _delete_load_balancer(self, resource: Resource) -> str:
        self.client.delete_load_balancer(LoadBalancerArn=resource.resource_id)
        return f"Deleted load balancer {resource.name}"

    def _delete_target_group(self, resource: Resource) -> str:
        self.client.delete_target_group(TargetGroupArn=resource.resource_id)
        return f"Deleted target group {resource.name}"
