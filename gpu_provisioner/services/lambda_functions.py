"""
Lambda service manager for the instance scheduler functions.
"""
from typing import List

from .base import BaseServiceManager, ResourceFilter
from ..core.models import Resource


class LambdaServiceManager(BaseServiceManager):
    """Service manager for Lambda functions."""

    resource_types = ('lambda_function',)

    @property
    def service_name(self) -> str:
        return 'lambda'

    def _discover_lambda_function(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'lambda_function', function['FunctionName'], function.get('State', 'Active'),
                runtime=function.get('Runtime'),
                vpc_id=function.get('VpcConfig', {}).get('VpcId'),
            )
            for function in self._paginate('list_functions', 'Functions')
            if resource_filter.matches_name(function['FunctionName'])
        ]

    def _delete_lambda_function(self, resource: Resource) -> str:
        self.client.delete_function(FunctionName=resource.resource_id)
        return f"Deleted Lambda function {resource.resource_id}"
