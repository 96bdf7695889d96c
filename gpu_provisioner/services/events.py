"""
EventBridge service manager for scheduler rules.
"""
from typing import List

from botocore.exceptions import ClientError

from .base import BaseServiceManager, ResourceFilter, is_not_found
from ..core.models import Resource


class EventsServiceManager(BaseServiceManager):
    """Service manager for EventBridge rules on the default bus."""

    resource_types = ('event_rule',)

    @property
    def service_name(self) -> str:
        return 'events'

    def rule_exists(self, name: str) -> bool:
        try:
            self.client.describe_rule(Name=name)
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def get_rule(self, name: str) -> Resource:
        rule = self.client.describe_rule(Name=name)
        return self._resource(
            'event_rule', rule['Name'], rule.get('State', 'unknown'),
            name=rule['Name'], arn=rule.get('Arn'),
            schedule=rule.get('ScheduleExpression'),
        )

    def _discover_event_rule(self, resource_filter: ResourceFilter) -> List[Resource]:
        if not resource_filter.prefix:
            return []
        return [
            self._resource(
                'event_rule', rule['Name'], rule.get('State', 'unknown'),
                name=rule['Name'], arn=rule.get('Arn'),
                schedule=rule.get('ScheduleExpression'),
            )
            for rule in self._paginate('list_rules', 'Rules', NamePrefix=resource_filter.prefix)
        ]

    def _delete_event_rule(self, resource: Resource) -> str:
        """Remove all targets first; a rule with targets cannot be deleted."""
        rule_name = resource.resource_id
        target_ids = [
            target['Id']
            for target in self._paginate('list_targets_by_rule', 'Targets', Rule=rule_name)
        ]
        if target_ids:
            self.client.remove_targets(Rule=rule_name, Ids=target_ids, Force=True)
        self.client.delete_rule(Name=rule_name, Force=True)
        return f"Deleted EventBridge rule {rule_name} ({len(target_ids)} target(s) removed)"
