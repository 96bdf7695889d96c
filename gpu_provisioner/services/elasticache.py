"""
ElastiCache service manager.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class ElastiCacheServiceManager(BaseServiceManager):
    """Service manager for ElastiCache clusters and cache subnet groups."""

    resource_types = ('cache_cluster', 'cache_subnet_group')

    @property
    def service_name(self) -> str:
        return 'elasticache'

    def _discover_cache_cluster(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'cache_cluster', cluster['CacheClusterId'], cluster.get('CacheClusterStatus', 'unknown'),
                engine=cluster.get('Engine'),
                subnet_group=cluster.get('CacheSubnetGroupName'),
            )
            for cluster in self._paginate('describe_cache_clusters', 'CacheClusters')
            if cluster.get('CacheClusterStatus') != 'deleting'
            and resource_filter.matches_name(cluster['CacheClusterId'])
        ]

    def _discover_cache_subnet_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'cache_subnet_group', group['CacheSubnetGroupName'], 'available',
                vpc_id=group.get('VpcId'),
            )
            for group in self._paginate('describe_cache_subnet_groups', 'CacheSubnetGroups')
            if resource_filter.matches_name(group['CacheSubnetGroupName'])
            or group.get('VpcId') in resource_filter.vpc_ids
        ]

    def _delete_cache_cluster(self, resource: Resource) -> str:
        self.client.delete_cache_cluster(CacheClusterId=resource.resource_id)
        delay = max(int(self.waits.interval), 1)
        self.client.get_waiter('cache_cluster_deleted').wait(
            CacheClusterId=resource.resource_id,
            WaiterConfig={'Delay': delay, 'MaxAttempts': max(int(1200 / delay), 1)}
        )
        return f"Deleted cache cluster {resource.resource_id}"

    def _delete_cache_subnet_group(self, resource: Resource) -> str:
        self.client.delete_cache_subnet_group(CacheSubnetGroupName=resource.resource_id)
        return f"Deleted cache subnet group {resource.resource_id}"
