"""
Service Quotas manager for reading limits and requesting increases.
"""
import logging
from typing import Optional

from botocore.exceptions import ClientError

from .base import BaseServiceManager, error_code, is_not_found

logger = logging.getLogger(__name__)


class ServiceQuotasManager(BaseServiceManager):
    """Reads applied quota values, falling back to AWS defaults."""

    @property
    def service_name(self) -> str:
        return 'service-quotas'

    def get_quota_value(self, service_code: str, quota_code: str, default: Optional[float] = None) -> Optional[float]:
        """Applied value of a quota, then the AWS default, then ``default``.

        Args:
            service_code: Service code such as 'ec2' or 'vpc'
            quota_code: Quota code such as 'L-0263D0A3'
            default: Value used when neither lookup answers

        Returns:
            Quota value
        """
        lookups = (
            self.client.get_service_quota,
            self.client.get_aws_default_service_quota,
        )
        for lookup in lookups:
            try:
                response = lookup(ServiceCode=service_code, QuotaCode=quota_code)
                value = response.get('Quota', {}).get('Value')
                if value is not None:
                    return value
            except ClientError as e:
                if not is_not_found(e) and error_code(e) not in ('AccessDeniedException', 'NoSuchResourceException'):
                    self._handle_aws_error(e, 'quota lookup', f"{service_code}/{quota_code}")
                logger.debug(f"Quota {service_code}/{quota_code} unavailable via {lookup.__name__}: {e}")
        logger.info(f"Using default value {default} for quota {service_code}/{quota_code}")
        return default

    def request_increase(self, service_code: str, quota_code: str, desired_value: float) -> str:
        """Submit a quota increase request.

        Returns:
            Request ID assigned by Service Quotas

        Raises:
            ServiceError: If the request is rejected
        """
        try:
            response = self.client.request_service_quota_increase(
                ServiceCode=service_code,
                QuotaCode=quota_code,
                DesiredValue=float(desired_value),
            )
        except ClientError as e:
            self._handle_aws_error(e, 'quota increase request', f"{service_code}/{quota_code}")
        request_id = response['RequestedQuota']['Id']
        logger.info(f"Requested {service_code}/{quota_code} = {desired_value} (request {request_id})")
        return request_id
