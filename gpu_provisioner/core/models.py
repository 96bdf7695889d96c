"""
Data models shared across pre-flight, deployment and cleanup.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import StateError


@dataclass
class Resource:
    """Represents an AWS resource discovered by a service manager."""
    service_type: str           # 'vpc', 'subnet', 'elastic-ip', 'iam-role', etc.
    resource_id: str           # Allocation ID, VPC ID, role name, etc.
    region: str                # AWS region
    current_state: str         # Provider-reported state
    tags: Dict[str, str]       # Resource tags
    metadata: Dict[str, Any]   # Service-specific metadata

    @property
    def name(self) -> str:
        return self.tags.get('Name') or self.metadata.get('name') or self.resource_id


@dataclass
class OperationResult:
    """Result of a mutating service operation (delete, release, detach)."""
    success: bool
    resource: Resource
    operation: str             # 'delete', 'release', 'dry-run'
    message: str              # Success/error message
    timestamp: datetime
    duration: Optional[float] = None  # Operation duration in seconds
    skipped: bool = False      # Nothing done (dry run or already gone)


class ConflictKind(str, Enum):
    CAPACITY_LIMIT = "CapacityLimit"
    ALREADY_EXISTS = "AlreadyExists"
    CIDR_OVERLAP = "CidrOverlap"
    ORPHANED_ROLE = "OrphanedRole"
    ORPHANED_RULE = "OrphanedRule"


class CheckStatus(str, Enum):
    PENDING = "Pending"
    PASS = "Pass"
    REMEDIATED = "Remediated"
    BLOCKED = "Blocked"


class AttemptOutcome(str, Enum):
    RESOLVED = "resolved"
    PARTIAL = "partial"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class ResourceScope:
    """Resource type plus the key that identifies what a check looks at."""
    resource_type: str
    key: str

    def __str__(self) -> str:
        return f"{self.resource_type}:{self.key}"


@dataclass
class Finding:
    """Structured existence facts produced by inspecting a check's scope."""
    conflicts: List[str]                  # Identifiers of colliding resources
    summary: str
    facts: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicts)


@dataclass
class RemediationAttempt:
    """One strategy attempt recorded against a conflict check."""
    strategy: str
    outcome: AttemptOutcome
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    changes: Dict[str, Any] = field(default_factory=dict)
    manual_commands: List[str] = field(default_factory=list)


@dataclass
class ConflictCheck:
    """A named pre-flight check and everything that happened to it during a scan."""
    name: str
    kind: ConflictKind
    scope: ResourceScope
    blocking: bool = True
    status: CheckStatus = CheckStatus.PENDING
    remediation_log: List[RemediationAttempt] = field(default_factory=list)
    finding: Optional[Finding] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not CheckStatus.PENDING

    @property
    def manual_commands(self) -> List[str]:
        commands = []
        for attempt in self.remediation_log:
            commands.extend(attempt.manual_commands)
        return commands

    def record_attempt(self, attempt: RemediationAttempt) -> None:
        """Append a strategy attempt.

        Raises:
            StateError: If the check already reached a terminal status
        """
        if self.is_terminal:
            raise StateError(f"Check {self.name} is already {self.status.value}")
        self.remediation_log.append(attempt)

    def conclude(self, status: CheckStatus, finding: Finding) -> None:
        """Move the check to a terminal status.

        Raises:
            StateError: If the check is already terminal or status is Pending
        """
        if self.is_terminal:
            raise StateError(f"Check {self.name} is already {self.status.value}")
        if status is CheckStatus.PENDING:
            raise StateError("A check cannot conclude as Pending")
        self.status = status
        self.finding = finding


class DeploymentState(str, Enum):
    NOT_DEPLOYED = "not_deployed"
    DEPLOYED = "deployed"
    FAILED = "failed"
    PARTIAL_DEPLOY = "partial_deploy"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class ResourcePlanSummary:
    """Change counts read from a saved plan."""
    to_create: int = 0
    to_update: int = 0
    to_replace: int = 0
    to_destroy: int = 0
    create_addresses: Tuple[str, ...] = ()

    @property
    def total_changes(self) -> int:
        return self.to_create + self.to_update + self.to_replace + self.to_destroy

    @property
    def touches_existing(self) -> bool:
        """Whether applying would modify or remove anything that already exists."""
        return (self.to_update + self.to_replace + self.to_destroy) > 0


@dataclass
class ApplyProgress:
    """Incremental progress of one apply invocation."""
    total_resources: int
    created_count: int = 0
    current_resource_name: Optional[str] = None
    current_resource_status: Optional[str] = None

    @property
    def percent(self) -> int:
        if self.total_resources <= 0:
            return 0
        return min(100, (self.created_count * 100) // self.total_resources)

    def reset(self, total_resources: int) -> None:
        self.total_resources = total_resources
        self.created_count = 0
        self.current_resource_name = None
        self.current_resource_status = None


@dataclass
class ZoneFailoverRequest:
    """Directive to re-plan with the availability zone constrained."""
    failed_zone: Optional[str]
    candidate_zones: List[str]
    selected_zone: Optional[str] = None


class PricingModel(str, Enum):
    SPOT = "spot"
    ON_DEMAND = "on-demand"


@dataclass(frozen=True)
class QuotaSnapshot:
    """vCPU quotas and requirement read fresh for one decision."""
    on_demand_vcpu_quota: float
    spot_vcpu_quota: float
    vcpus_required_for_instance_type: int

    @property
    def spot_fits(self) -> bool:
        return self.spot_vcpu_quota >= self.vcpus_required_for_instance_type

    @property
    def on_demand_fits(self) -> bool:
        return self.on_demand_vcpu_quota >= self.vcpus_required_for_instance_type


@dataclass
class InstanceSelection:
    """Instance type and pricing model chosen by the quota advisor."""
    instance_type: str
    pricing_model: PricingModel
    vcpus: int
    snapshot: QuotaSnapshot
    requested_instance_type: Optional[str] = None   # Set when substituted

    @property
    def substituted(self) -> bool:
        return (self.requested_instance_type is not None
                and self.requested_instance_type != self.instance_type)


@dataclass
class QuotaIncreaseRequest:
    """Everything an operator needs to ask for more GPU vCPU quota."""
    instance_type: str
    region: str
    vcpus_required: int
    suggested_value: int
    quota_codes: Dict[str, str]              # pricing model -> quota code
    current_quotas: Dict[str, float]
    console_url: str
    cli_commands: List[str] = field(default_factory=list)


class PlanAction(str, Enum):
    """Operator choice when a plan changes existing resources."""
    PROCEED = "proceed"
    CREATE_ONLY = "create-only"
    CANCEL = "cancel"
