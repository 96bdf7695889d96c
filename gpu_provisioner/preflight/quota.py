"""
Quota-aware instance type and pricing selection.
"""
import logging
from typing import FrozenSet, Optional, Sequence

from ..core.exceptions import QuotaExhausted, ServiceError
from ..core.models import InstanceSelection, PricingModel, QuotaIncreaseRequest, QuotaSnapshot
from ..services.inspector import CloudResourceInspector
from ..state.reports import ReportWriter

logger = logging.getLogger(__name__)

# Running On-Demand G and VT instances / All G and VT Spot Instance Requests
ON_DEMAND_QUOTA_CODE = 'L-DB2E81BA'
SPOT_QUOTA_CODE = 'L-3819A6DF'
QUOTA_SERVICE_CODE = 'ec2'

# Smaller GPU instance types, ascending by vCPU count
ALTERNATE_INSTANCE_TYPES = ('g4dn.xlarge', 'g5.xlarge', 'g4dn.2xlarge', 'g5.2xlarge')


class QuotaAdvisor:
    """Picks an instance type and pricing model that fit the account's vCPU quotas."""

    def __init__(
        self,
        inspector: CloudResourceInspector,
        region: str,
        reports: Optional[ReportWriter] = None,
        alternates: Sequence[str] = ALTERNATE_INSTANCE_TYPES,
        increase_target: int = 64,
    ):
        self.inspector = inspector
        self.region = region
        self.reports = reports
        self.alternates = tuple(alternates)
        self.increase_target = increase_target

    def snapshot(self, instance_type: str) -> QuotaSnapshot:
        """Read quotas and the vCPU cost of ``instance_type`` fresh from AWS.

        Raises:
            ServiceError: If the instance type is unknown in the region
        """
        vcpus = self.inspector.instance_type_vcpus(instance_type)
        if vcpus is None:
            raise ServiceError(f"Instance type {instance_type} is not known in {self.region}")
        on_demand = self.inspector.quota_value(QUOTA_SERVICE_CODE, ON_DEMAND_QUOTA_CODE, 0) or 0
        spot = self.inspector.quota_value(QUOTA_SERVICE_CODE, SPOT_QUOTA_CODE, 0) or 0
        snapshot = QuotaSnapshot(
            on_demand_vcpu_quota=on_demand,
            spot_vcpu_quota=spot,
            vcpus_required_for_instance_type=vcpus,
        )
        logger.info(
            f"{instance_type}: {vcpus} vCPUs required; quotas on-demand={on_demand:g}, spot={spot:g}"
        )
        return snapshot

    def select(self, instance_type: str) -> InstanceSelection:
        """Choose a feasible instance type and pricing model.

        Spot is preferred when it fits, then on-demand, then the largest smaller
        alternate that is offered in the region and fits either quota. A
        substituted type is re-validated by running this same procedure on it.

        Raises:
            QuotaExhausted: If nothing fits; carries the quota increase request
        """
        selection = self._select(instance_type, requested=instance_type, tried=frozenset())
        if selection is not None:
            return selection

        request = self.increase_request(instance_type)
        report_path = self.reports.write_quota(request) if self.reports else None
        raise QuotaExhausted(request, report_path)

    def _select(self, instance_type: str, requested: str, tried: FrozenSet[str]) -> Optional[InstanceSelection]:
        tried = tried | {instance_type}
        snapshot = self.snapshot(instance_type)

        if snapshot.spot_fits:
            return self._selection(instance_type, PricingModel.SPOT, snapshot, requested)
        if snapshot.on_demand_fits:
            return self._selection(instance_type, PricingModel.ON_DEMAND, snapshot, requested)

        best_quota = max(snapshot.spot_vcpu_quota, snapshot.on_demand_vcpu_quota)
        for candidate in self._candidates(tried, snapshot.vcpus_required_for_instance_type, best_quota):
            logger.info(f"Trying alternate instance type {candidate} instead of {instance_type}")
            selection = self._select(candidate, requested, tried)
            if selection is not None:
                return selection
            tried = tried | {candidate}
        return None

    def _candidates(self, tried: FrozenSet[str], required: int, best_quota: float):
        """Untried, smaller, offered alternates that fit a quota, largest first."""
        usable = []
        for candidate in self.alternates:
            if candidate in tried:
                continue
            vcpus = self.inspector.instance_type_vcpus(candidate)
            if vcpus is None or vcpus >= required or vcpus > best_quota:
                continue
            if not self.inspector.instance_type_offered(candidate):
                logger.info(f"{candidate} is not offered in {self.region}")
                continue
            usable.append((vcpus, candidate))
        # Largest first; equal sizes keep list order
        return [candidate for _, candidate in sorted(usable, key=lambda item: item[0], reverse=True)]

    def _selection(self, instance_type: str, pricing: PricingModel, snapshot: QuotaSnapshot,
                   requested: str) -> InstanceSelection:
        selection = InstanceSelection(
            instance_type=instance_type,
            pricing_model=pricing,
            vcpus=snapshot.vcpus_required_for_instance_type,
            snapshot=snapshot,
            requested_instance_type=requested if requested != instance_type else None,
        )
        logger.info(f"Selected {instance_type} ({pricing.value})")
        return selection

    def increase_request(self, instance_type: str) -> QuotaIncreaseRequest:
        snapshot = self.snapshot(instance_type)
        vcpus = snapshot.vcpus_required_for_instance_type
        suggested = max(vcpus, self.increase_target)
        codes = {PricingModel.ON_DEMAND.value: ON_DEMAND_QUOTA_CODE, PricingModel.SPOT.value: SPOT_QUOTA_CODE}
        return QuotaIncreaseRequest(
            instance_type=instance_type,
            region=self.region,
            vcpus_required=vcpus,
            suggested_value=suggested,
            quota_codes=codes,
            current_quotas={
                PricingModel.ON_DEMAND.value: snapshot.on_demand_vcpu_quota,
                PricingModel.SPOT.value: snapshot.spot_vcpu_quota,
            },
            console_url=(
                f"https://{self.region}.console.aws.amazon.com/servicequotas/home/"
                f"services/ec2/quotas/{ON_DEMAND_QUOTA_CODE}"
            ),
            cli_commands=[
                f"aws service-quotas request-service-quota-increase --service-code {QUOTA_SERVICE_CODE} "
                f"--quota-code {code} --desired-value {suggested} --region {self.region}"
                for code in codes.values()
            ],
        )

    def request_increase(self, request: QuotaIncreaseRequest, pricing: PricingModel = PricingModel.ON_DEMAND) -> str:
        """Submit the quota increase for one pricing model.

        Returns:
            Service Quotas request ID
        """
        return self.inspector.quotas.request_increase(
            QUOTA_SERVICE_CODE, request.quota_codes[pricing.value], request.suggested_value
        )
