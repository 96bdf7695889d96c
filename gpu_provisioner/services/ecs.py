"""
ECS service manager for container clusters created by a deployment.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class ECSServiceManager(BaseServiceManager):
    """Service manager for ECS clusters."""

    resource_types = ('ecs_cluster',)

    @property
    def service_name(self) -> str:
        return 'ecs'

    def _discover_ecs_cluster(self, resource_filter: ResourceFilter) -> List[Resource]:
        cluster_arns = self._paginate('list_clusters', 'clusterArns')
        if not cluster_arns:
            return []

        resources = []
        # describe_clusters accepts at most 100 ARNs per call
        for start in range(0, len(cluster_arns), 100):
            response = self.client.describe_clusters(clusters=cluster_arns[start:start + 100])
            for cluster in response.get('clusters', []):
                if cluster.get('status') == 'INACTIVE':
                    continue
                if resource_filter.matches_name(cluster['clusterName']):
                    resources.append(self._resource(
                        'ecs_cluster', cluster['clusterArn'], cluster.get('status', 'unknown'),
                        name=cluster['clusterName'],
                        running_tasks=cluster.get('runningTasksCount', 0),
                    ))
        return resources

    def _delete_ecs_cluster(self, resource: Resource) -> str:
        """Scale every service to zero, delete the services, then the cluster."""
        cluster_arn = resource.resource_id
        service_arns = self._paginate('list_services', 'serviceArns', cluster=cluster_arn)
        for service_arn in service_arns:
            self.client.update_service(cluster=cluster_arn, service=service_arn, desiredCount=0)
            self.client.delete_service(cluster=cluster_arn, service=service_arn, force=True)
        self.client.delete_cluster(cluster=cluster_arn)
        return f"Deleted ECS cluster {resource.name} and {len(service_arns)} service(s)"
