"""
Failure classification for Terraform apply errors and AWS API errors.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Pattern, Sequence, Tuple

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class FailureCategory(str, Enum):
    """Taxonomy of provisioning failures."""
    CAPACITY_LIMIT_EXCEEDED = "CapacityLimitExceeded"
    RESOURCE_ALREADY_EXISTS = "ResourceAlreadyExists"
    NETWORK_RANGE_CONFLICT = "NetworkRangeConflict"
    INSUFFICIENT_INSTANCE_CAPACITY = "InsufficientInstanceCapacity"
    ACCESS_DENIED = "AccessDenied"
    DEPENDENCY_VIOLATION = "DependencyViolation"
    INVALID_PARAMETER = "InvalidParameter"
    UNCLASSIFIED_ENGINE_ERROR = "UnclassifiedEngineError"


def _pattern(expression: str) -> Pattern:
    return re.compile(expression, re.IGNORECASE)


# Ordered; the first matching entry wins
FAILURE_PATTERNS: Tuple[Tuple[Pattern, FailureCategory, str], ...] = (
    (
        # RequestLimitExceeded is API throttling, not a quota
        _pattern(r"AddressLimitExceeded|VpcLimitExceeded|VcpuLimitExceeded|\w*(?<!Request)LimitExceeded|"
                 r"MaxSpotInstanceCountExceeded|(?<!request )limit exceeded"),
        FailureCategory.CAPACITY_LIMIT_EXCEEDED,
        "An account quota is exhausted; release unused resources or request a quota increase",
    ),
    (
        _pattern(r"ResourceAlreadyExistsException|EntityAlreadyExists|InvalidGroup\.Duplicate|already exists"),
        FailureCategory.RESOURCE_ALREADY_EXISTS,
        "A resource with the planned name already exists; import it or rename the deployment",
    ),
    (
        _pattern(r"InvalidSubnet\.Conflict|InvalidVpc\.Range|CIDR block \S+ conflicts|conflicts with another subnet"),
        FailureCategory.NETWORK_RANGE_CONFLICT,
        "Requested subnet ranges overlap existing subnets; reuse the network or pick other ranges",
    ),
    (
        _pattern(r"UnauthorizedOperation|AccessDenied|not authorized to perform"),
        FailureCategory.ACCESS_DENIED,
        "The deploying identity lacks a required permission; run 'gpu-provisioner permissions'",
    ),
    (
        _pattern(r"InsufficientInstanceCapacity|do not have sufficient.*capacity"),
        FailureCategory.INSUFFICIENT_INSTANCE_CAPACITY,
        "No capacity for the instance type in this availability zone; retry in another zone",
    ),
    (
        _pattern(r"DependencyViolation|has a dependent object|has dependencies"),
        FailureCategory.DEPENDENCY_VIOLATION,
        "A resource still has dependents; remove them first or run 'gpu-provisioner cleanup'",
    ),
    (
        _pattern(r"InvalidParameter\w*|InvalidAMIID\.\w+|InvalidInstanceType"),
        FailureCategory.INVALID_PARAMETER,
        "A parameter in the Terraform configuration is invalid for this region or account",
    ),
)


@dataclass
class Classification:
    """A classified failure; ``raw_message`` is kept verbatim."""
    category: FailureCategory
    hint: str
    raw_message: str
    marker: Optional[str] = None

    @property
    def is_capacity_shortage(self) -> bool:
        return self.category is FailureCategory.INSUFFICIENT_INSTANCE_CAPACITY


class FailureClassifier:
    """Matches failure text against an ordered pattern table."""

    def __init__(self, patterns: Sequence[Tuple[Pattern, FailureCategory, str]] = FAILURE_PATTERNS):
        self.patterns = tuple(patterns)

    def classify_text(self, text: Optional[str]) -> Classification:
        """Classify captured error output.

        Args:
            text: Error text from the apply stream, possibly empty

        Returns:
            First matching Classification, or UnclassifiedEngineError with
            the text preserved
        """
        text = text or ""
        for pattern, category, hint in self.patterns:
            match = pattern.search(text)
            if match:
                logger.info(f"Classified failure as {category.value} (matched '{match.group(0)}')")
                return Classification(category, hint, text, match.group(0))

        logger.info("Failure did not match any known pattern")
        return Classification(
            FailureCategory.UNCLASSIFIED_ENGINE_ERROR,
            "Unrecognised Terraform error; see the raw message",
            text,
        )

    def classify_client_error(self, error: ClientError) -> Classification:
        """Classify a boto3 error by its code and message."""
        details = error.response.get('Error', {})
        text = f"{details.get('Code', '')}: {details.get('Message', '')}".strip(': ')
        return self.classify_text(text or str(error))
