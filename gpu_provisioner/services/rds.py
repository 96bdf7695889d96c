"""
RDS service manager for database instances and their subnet groups.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class RDSServiceManager(BaseServiceManager):
    """Service manager for RDS DB instances and DB subnet groups."""

    resource_types = ('db_instance', 'db_subnet_group')

    @property
    def service_name(self) -> str:
        return 'rds'

    def _discover_db_instance(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'db_instance', db['DBInstanceIdentifier'], db['DBInstanceStatus'],
                engine=db.get('Engine'),
                instance_class=db.get('DBInstanceClass'),
                vpc_id=db.get('DBSubnetGroup', {}).get('VpcId'),
            )
            for db in self._paginate('describe_db_instances', 'DBInstances')
            if db['DBInstanceStatus'] != 'deleting'
            and (resource_filter.matches_name(db['DBInstanceIdentifier'])
                 or db.get('DBSubnetGroup', {}).get('VpcId') in resource_filter.vpc_ids)
        ]

    def _discover_db_subnet_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'db_subnet_group', group['DBSubnetGroupName'],
                group.get('SubnetGroupStatus', 'unknown'),
                vpc_id=group.get('VpcId'),
            )
            for group in self._paginate('describe_db_subnet_groups', 'DBSubnetGroups')
            if resource_filter.matches_name(group['DBSubnetGroupName'])
            or group.get('VpcId') in resource_filter.vpc_ids
        ]

    def _delete_db_instance(self, resource: Resource) -> str:
        """Delete without a final snapshot and wait so the subnet group can follow."""
        self.client.delete_db_instance(
            DBInstanceIdentifier=resource.resource_id,
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        )
        delay = max(int(self.waits.interval), 1)
        waiter = self.client.get_waiter('db_instance_deleted')
        waiter.wait(
            DBInstanceIdentifier=resource.resource_id,
            WaiterConfig={'Delay': delay, 'MaxAttempts': max(int(1800 / delay), 1)}
        )
        return f"Deleted DB instance {resource.resource_id} (no final snapshot)"

    def _delete_db_subnet_group(self, resource: Resource) -> str:
        self.client.delete_db_subnet_group(DBSubnetGroupName=resource.resource_id)
        return f"Deleted DB subnet group {resource.resource_id}"
