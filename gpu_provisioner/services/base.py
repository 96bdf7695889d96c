"""
Base service manager interface for AWS services.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import DeploymentConfig
from ..core.exceptions import ServiceError
from ..core.models import OperationResult, Resource

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ('NotFound', 'NoSuchEntity', 'NoSuch', 'ResourceNotFoundException')


def error_code(error: Exception) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', '')
    return ''


def is_not_found(error: Exception) -> bool:
    """Whether an AWS error means the resource no longer exists."""
    code = error_code(error)
    return bool(code) and any(marker in code for marker in NOT_FOUND_MARKERS)


def tags_to_dict(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    return {tag['Key']: tag['Value'] for tag in tags or []}


@dataclass
class ResourceFilter:
    """Selects the resources that belong to one deployment."""
    prefix: str
    vpc_ids: List[str] = field(default_factory=list)

    def matches_name(self, *names: Optional[str]) -> bool:
        if not self.prefix:
            return False
        return any(name and self.prefix in name for name in names)


@dataclass
class WaitSettings:
    """Bounds for waiting on deletions AWS completes asynchronously."""
    interval: float = 5.0
    instance_timeout: float = 300.0
    nat_gateway_timeout: float = 180.0
    eni_timeout: float = 120.0

    @classmethod
    def from_config(cls, config: DeploymentConfig) -> "WaitSettings":
        return cls(
            interval=config.poll_interval,
            instance_timeout=config.instance_termination_timeout,
            nat_gateway_timeout=config.nat_gateway_timeout,
            eni_timeout=config.eni_release_timeout,
        )


class BaseServiceManager(ABC):
    """Abstract base class for all AWS service managers.

    Subclasses list the resource types they own in ``resource_types`` and
    implement ``_discover_<type>`` and ``_delete_<type>`` for each of them.
    """

    resource_types: Tuple[str, ...] = ()

    def __init__(self, session: boto3.Session, region: str, waits: Optional[WaitSettings] = None):
        """Initialize the service manager with AWS session and region.

        Args:
            session: Authenticated boto3 session
            region: AWS region to operate in
            waits: Polling bounds for asynchronous deletions
        """
        self.session = session
        self.region = region
        self.waits = waits or WaitSettings()
        self._client = None

    @property
    def client(self):
        """Lazy-loaded AWS service client."""
        if self._client is None:
            self._client = self.session.client(self.service_name, region_name=self.region)
        return self._client

    @property
    @abstractmethod
    def service_name(self) -> str:
        """AWS service name (e.g., 'ec2', 'iam', 'logs')."""
        pass

    def discover_resources(self, resource_type: str, resource_filter: ResourceFilter) -> List[Resource]:
        """Discover resources of one type that belong to the deployment.

        Args:
            resource_type: One of ``resource_types``
            resource_filter: Prefix and VPC scope to match

        Returns:
            List of discovered resources

        Raises:
            ServiceError: If discovery fails
        """
        self._check_type(resource_type)
        try:
            return getattr(self, f"_discover_{resource_type}")(resource_filter)
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, f'{resource_type} discovery')

    def delete_resource(self, resource: Resource, dry_run: bool = False) -> OperationResult:
        """Delete one resource, treating an already missing resource as success.

        Args:
            resource: Resource to delete
            dry_run: Report the intended deletion without calling AWS

        Returns:
            Result of the delete operation
        """
        self._check_type(resource.service_type)
        start_time = datetime.now()

        if dry_run:
            return self._create_operation_result(
                resource, 'dry-run', True,
                f"[DRY RUN] Would delete {resource.service_type} {resource.name}",
                start_time, skipped=True,
            )

        try:
            message = getattr(self, f"_delete_{resource.service_type}")(resource)
            duration = (datetime.now() - start_time).total_seconds()
            logger.info(f"Deleted {resource.service_type} {resource.resource_id}")
            return self._create_operation_result(
                resource, 'delete', True,
                message or f"Deleted {resource.service_type} {resource.name}",
                start_time, duration,
            )
        except (ClientError, BotoCoreError, ServiceError) as e:
            duration = (datetime.now() - start_time).total_seconds()
            if is_not_found(e):
                return self._create_operation_result(
                    resource, 'delete', True,
                    f"{resource.service_type} {resource.resource_id} already deleted",
                    start_time, duration, skipped=True,
                )
            logger.warning(f"Failed to delete {resource.service_type} {resource.resource_id}: {e}")
            return self._create_operation_result(
                resource, 'delete', False,
                f"Failed to delete {resource.service_type} {resource.resource_id}: {e}",
                start_time, duration,
            )

    def _check_type(self, resource_type: str) -> None:
        if resource_type not in self.resource_types:
            raise ServiceError(
                f"{self.__class__.__name__} does not manage resource type '{resource_type}'"
            )

    def _paginate(self, operation: str, result_key: str, **kwargs) -> List[Dict[str, Any]]:
        """Collect every item of a paginated describe/list call."""
        items = []
        if self.client.can_paginate(operation):
            for page in self.client.get_paginator(operation).paginate(**kwargs):
                items.extend(page.get(result_key, []))
        else:
            items.extend(getattr(self.client, operation)(**kwargs).get(result_key, []))
        return items

    def _resource(
        self,
        service_type: str,
        resource_id: str,
        current_state: str = 'unknown',
        tags: Optional[Dict[str, str]] = None,
        **metadata: Any,
    ) -> Resource:
        return Resource(
            service_type=service_type,
            resource_id=resource_id,
            region=self.region,
            current_state=current_state,
            tags=tags or {},
            metadata=metadata,
        )

    def _create_operation_result(
        self,
        resource: Resource,
        operation: str,
        success: bool,
        message: str,
        start_time: datetime,
        duration: Optional[float] = None,
        skipped: bool = False,
    ) -> OperationResult:
        """Helper method to create operation results.

        Args:
            resource: Resource that was operated on
            operation: Type of operation ('delete', 'dry-run')
            success: Whether the operation succeeded
            message: Success or error message
            start_time: When the operation started
            duration: How long the operation took in seconds
            skipped: Whether nothing had to be done

        Returns:
            OperationResult instance
        """
        return OperationResult(
            success=success,
            resource=resource,
            operation=operation,
            message=message,
            timestamp=start_time,
            duration=duration,
            skipped=skipped,
        )

    def _handle_aws_error(self, error: Exception, operation: str, resource_id: str = None) -> None:
        """Handle AWS API errors and convert to ServiceError.

        Args:
            error: The original AWS error
            operation: Operation that failed
            resource_id: ID of resource being operated on (if applicable)

        Raises:
            ServiceError: Wrapped error with context
        """
        resource_context = f" for resource {resource_id}" if resource_id else ""
        error_message = f"AWS {self.service_name} {operation} failed{resource_context}: {str(error)}"
        raise ServiceError(error_message, details=error_code(error) or str(error))
