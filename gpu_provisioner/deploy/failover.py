"""
Zone failover negotiation after an insufficient-capacity failure.
"""
import logging
import re
from typing import List, Optional

from .classifier import Classification, FailureCategory
from ..core.models import ZoneFailoverRequest
from ..services.inspector import CloudResourceInspector

logger = logging.getLogger(__name__)

ZONE_PATTERN = re.compile(r'\b[a-z]{2,3}-[a-z]+-\d[a-z]\b')
# "... by not specifying an Availability Zone in your request or choosing us-east-1b, us-east-1c."
CHOOSING_PATTERN = re.compile(r'choosing ((?:[a-z]{2,3}-[a-z]+-\d[a-z](?:,\s*|\s+or\s+|\s+and\s+)?)+)')


def failed_zone_from(text: str) -> Optional[str]:
    """The first availability zone named in the error text."""
    match = ZONE_PATTERN.search(text)
    return match.group(0) if match else None


def suggested_zones_from(text: str) -> List[str]:
    """Zones AWS suggests in its capacity error, in the order given."""
    match = CHOOSING_PATTERN.search(text)
    if not match:
        return []
    zones = []
    for zone in ZONE_PATTERN.findall(match.group(1)):
        if zone not in zones:
            zones.append(zone)
    return zones


class ZoneFailoverNegotiator:
    """Turns a capacity failure into a zone change the operator agreed to.

    This never retries anything itself; the caller feeds the returned request
    into a fresh plan and apply.
    """

    def __init__(self, inspector: CloudResourceInspector, prompter):
        self.inspector = inspector
        self.prompter = prompter

    def candidates(self, text: str, failed_zone: Optional[str]) -> List[str]:
        zones = suggested_zones_from(text)
        if not zones:
            logger.info("No zones suggested in the error; asking EC2 for available zones")
            zones = self.inspector.available_zones()
        return [zone for zone in zones if zone != failed_zone]

    def negotiate(self, classification: Classification) -> Optional[ZoneFailoverRequest]:
        """Offer alternate zones for an insufficient-capacity failure.

        Returns:
            ZoneFailoverRequest with ``selected_zone`` set, or None when the
            failure is of another category, no zone is available or the
            operator declines
        """
        if classification.category is not FailureCategory.INSUFFICIENT_INSTANCE_CAPACITY:
            return None

        text = classification.raw_message
        failed_zone = failed_zone_from(text)
        request = ZoneFailoverRequest(failed_zone=failed_zone, candidate_zones=self.candidates(text, failed_zone))
        if not request.candidate_zones:
            logger.warning(f"No alternate availability zones to offer (failed zone: {failed_zone})")
            return None

        selected = self.prompter.choose_zone(request)
        if selected is None:
            logger.info("Operator declined zone failover")
            return None
        if selected not in request.candidate_zones:
            logger.warning(f"Ignoring zone {selected}; it was not offered")
            return None

        request.selected_zone = selected
        logger.info(f"Zone failover: {failed_zone or 'unknown zone'} -> {selected}")
        return request
