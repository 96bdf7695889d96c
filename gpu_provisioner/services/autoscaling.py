"""
Auto Scaling Groups service manager.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter, tags_to_dict
from ..core.models import Resource


class AutoScalingServiceManager(BaseServiceManager):
    """Service manager for Auto Scaling Groups."""

    resource_types = ('autoscaling_group',)

    @property
    def service_name(self) -> str:
        return 'autoscaling'

    def _discover_autoscaling_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for asg in self._paginate('describe_auto_scaling_groups', 'AutoScalingGroups'):
            tags = tags_to_dict(asg.get('Tags'))
            if not resource_filter.matches_name(asg['AutoScalingGroupName'], tags.get('Name')):
                continue
            resources.append(self._resource(
                'autoscaling_group', asg['AutoScalingGroupName'],
                'deleting' if asg.get('Status') == 'Delete in progress' else 'active',
                tags,
                desired_capacity=asg['DesiredCapacity'],
                min_size=asg['MinSize'],
                max_size=asg['MaxSize'],
                instance_ids=[instance['InstanceId'] for instance in asg.get('Instances', [])],
            ))
        return resources

    def _delete_autoscaling_group(self, resource: Resource) -> str:
        """Scale to zero so no replacement instances launch, then force delete."""
        asg_name = resource.resource_id
        self.client.update_auto_scaling_group(
            AutoScalingGroupName=asg_name,
            MinSize=0,
            MaxSize=0,
            DesiredCapacity=0,
        )
        self.client.delete_auto_scaling_group(AutoScalingGroupName=asg_name, ForceDelete=True)
        return f"Scaled to zero and deleted Auto Scaling Group {asg_name}"
