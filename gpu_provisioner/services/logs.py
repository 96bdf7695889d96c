"""
CloudWatch Logs service manager.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class LogsServiceManager(BaseServiceManager):
    """Service manager for CloudWatch log groups."""

    resource_types = ('log_group',)

    @property
    def service_name(self) -> str:
        return 'logs'

    def log_group_exists(self, name: str) -> bool:
        groups = self._paginate('describe_log_groups', 'logGroups', logGroupNamePrefix=name)
        return any(group['logGroupName'] == name for group in groups)

    def _discover_log_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'log_group', group['logGroupName'], 'available',
                name=group['logGroupName'],
                retention_days=group.get('retentionInDays'),
                stored_bytes=group.get('storedBytes', 0),
            )
            for group in self._paginate('describe_log_groups', 'logGroups')
            if resource_filter.matches_name(group['logGroupName'])
        ]

    def _delete_log_group(self, resource: Resource) -> str:
        self.client.delete_log_group(logGroupName=resource.resource_id)
        return f"Deleted log group {resource.resource_id}"
