"""
Remediation strategies and the ordered chain that walks them.

Each strategy is one idempotent action against one kind of conflict. A chain
tries its strategies least destructive first and re-inspects after every
attempt; a strategy's own report of success is never trusted on its own.
"""
import ipaddress
import logging
import secrets
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence

from ..core.context import RunContext
from ..core.exceptions import ConfigurationError, EngineError, ServiceError
from ..core.models import (
    AttemptOutcome, ConflictCheck, ConflictKind, Finding, RemediationAttempt, Resource,
)
from ..engine.terraform import TerraformRunner
from ..engine.tfvars import TfvarsEditor
from ..services.inspector import CapacityUsage, CloudResourceInspector

logger = logging.getLogger(__name__)


class Destructiveness(IntEnum):
    """How much state a strategy changes; chains must not decrease along their order."""
    REUSE = 0
    IMPORT = 1
    RENAME = 2
    DELETE = 3
    MANUAL = 4


class RemediationStrategy(ABC):
    """One concrete action that may resolve a conflict."""

    name: str = "strategy"
    destructiveness: Destructiveness = Destructiveness.MANUAL

    def is_applicable(self, check: ConflictCheck, finding: Finding) -> bool:
        return True

    @abstractmethod
    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        """Attempt the remediation.

        Returns:
            The attempt, with RESOLVED, PARTIAL or FAILED outcome
        """
        pass

    def _attempt(self, outcome: AttemptOutcome, message: str, **kwargs) -> RemediationAttempt:
        return RemediationAttempt(strategy=self.name, outcome=outcome, message=message, **kwargs)


class RemediationStrategyChain:
    """Ordered strategies for one conflict kind."""

    def __init__(self, kind: ConflictKind, strategies: Sequence[RemediationStrategy]):
        """Initialize the chain.

        Raises:
            ValueError: If a strategy is less destructive than one before it
        """
        for earlier, later in zip(strategies, strategies[1:]):
            if later.destructiveness < earlier.destructiveness:
                raise ValueError(
                    f"{kind.value} chain puts {later.name} ({later.destructiveness.name}) "
                    f"after {earlier.name} ({earlier.destructiveness.name})"
                )
        self.kind = kind
        self.strategies = list(strategies)

    def remediate(
        self,
        check: ConflictCheck,
        finding: Finding,
        inspect: Callable[[], Finding],
    ) -> Finding:
        """Walk the strategies until re-inspection shows no conflict.

        Args:
            check: Check whose remediation log records every attempt
            finding: The conflict found by the initial inspection
            inspect: Re-runs the check's inspection

        Returns:
            The finding from the last inspection
        """
        for strategy in self.strategies:
            if not strategy.is_applicable(check, finding):
                check.record_attempt(RemediationAttempt(
                    strategy=strategy.name,
                    outcome=AttemptOutcome.NOT_APPLICABLE,
                    message="Not applicable to this conflict",
                ))
                continue

            logger.info(f"{check.name}: trying {strategy.name}")
            try:
                attempt = strategy.apply(check, finding)
            except (ServiceError, EngineError, ConfigurationError) as e:
                attempt = RemediationAttempt(strategy.name, AttemptOutcome.FAILED, str(e))
            check.record_attempt(attempt)

            if attempt.outcome not in (AttemptOutcome.RESOLVED, AttemptOutcome.PARTIAL):
                logger.info(f"{check.name}: {strategy.name} did not resolve the conflict: {attempt.message}")
                continue

            finding = inspect()
            if not finding.has_conflict:
                logger.info(f"{check.name}: resolved by {strategy.name}")
                return finding

            if attempt.outcome is AttemptOutcome.RESOLVED:
                attempt.outcome = AttemptOutcome.PARTIAL
                attempt.message += f" (re-inspection still shows: {finding.summary})"
            logger.info(f"{check.name}: conflict remains after {strategy.name}: {finding.summary}")

        return finding


# Capacity limits

class ReleaseUnusedResources(RemediationStrategy):
    """Release unused resources matching the naming convention until enough capacity is free."""

    destructiveness = Destructiveness.DELETE

    def __init__(self, noun: str, required: int, release: Callable[[Resource], None]):
        self.name = f"release-unused-{noun.replace(' ', '-')}"
        self.noun = noun
        self.required = required
        self.release = release

    def is_applicable(self, check: ConflictCheck, finding: Finding) -> bool:
        return bool(finding.facts['usage'].reclaimable)

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        usage: CapacityUsage = finding.facts['usage']
        shortfall = self.required - usage.available
        released = []
        for resource in usage.reclaimable[:shortfall]:
            self.release(resource)
            released.append(resource.resource_id)
            logger.info(f"Released unused {self.noun} {resource.resource_id}")

        outcome = AttemptOutcome.RESOLVED if len(released) >= shortfall else AttemptOutcome.PARTIAL
        return self._attempt(
            outcome,
            f"Released {len(released)} unused {self.noun}(s); {shortfall} needed",
            changes={'released': released},
        )


class CapacityReport(RemediationStrategy):
    """Terminal: report usage against the limit with manual commands."""

    def __init__(self, noun: str, required: int, quota: tuple, region: str, list_command: str, delete_command: str):
        self.name = f"report-{noun.replace(' ', '-')}-capacity"
        self.noun = noun
        self.required = required
        self.service_code, self.quota_code = quota
        self.region = region
        self.list_command = list_command
        self.delete_command = delete_command

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        usage: CapacityUsage = finding.facts['usage']
        desired = usage.in_use + self.required
        return self._attempt(
            AttemptOutcome.FAILED,
            f"{self.noun}: {usage.in_use} in use of {usage.limit} allowed, "
            f"{usage.available} available, {self.required} required",
            manual_commands=[
                self.list_command,
                self.delete_command,
                f"aws service-quotas request-service-quota-increase --service-code {self.service_code} "
                f"--quota-code {self.quota_code} --desired-value {desired} --region {self.region}",
            ],
        )


# Already-exists conflicts

class ImportExistingResources(RemediationStrategy):
    """Bring existing resources under Terraform management, skipping tracked ones."""

    name = "import-into-state"
    destructiveness = Destructiveness.IMPORT

    def __init__(self, engine: TerraformRunner):
        self.engine = engine

    def is_applicable(self, check: ConflictCheck, finding: Finding) -> bool:
        addresses = finding.facts.get('addresses', {})
        return all(name in addresses for name in finding.conflicts)

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        addresses: Dict[str, str] = finding.facts['addresses']
        identifiers: Dict[str, str] = finding.facts['identifiers']
        tracked = set(self.engine.state_list())

        imported, skipped, failed = [], [], []
        for name in finding.conflicts:
            address = addresses[name]
            if address in tracked:
                skipped.append(address)
                continue
            result = self.engine.import_resource(address, identifiers[name])
            if result.ok:
                imported.append(address)
                logger.info(f"Imported {identifiers[name]} as {address}")
            else:
                failed.append(address)
                logger.warning(f"Import of {identifiers[name]} as {address} failed: {result.stderr.strip()}")

        if not failed:
            outcome = AttemptOutcome.RESOLVED
        elif imported:
            outcome = AttemptOutcome.PARTIAL
        else:
            outcome = AttemptOutcome.FAILED
        return self._attempt(
            outcome,
            f"Imported {len(imported)}, already tracked {len(skipped)}, failed {len(failed)}",
            changes={'imported': imported, 'already_tracked': skipped, 'failed': failed},
        )


class RenameWithSuffix(RemediationStrategy):
    """Give the deployment a disambiguated name prefix and persist it to tfvars."""

    name = "rename-with-suffix"
    destructiveness = Destructiveness.RENAME

    def __init__(self, context: RunContext, tfvars: TfvarsEditor):
        self.context = context
        self.tfvars = tfvars

    def new_prefix(self) -> str:
        current = self.context.name_prefix
        if not current.endswith(self.context.region):
            return f"{current}-{self.context.region}"
        return f"{current}-{secrets.token_hex(3)}"

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        old_prefix = self.context.name_prefix
        new_prefix = self.new_prefix()
        edit = self.tfvars.update({'name_prefix': new_prefix}, reason=f"{check.name}: rename to avoid existing resources")
        self.context.name_prefix = new_prefix
        return self._attempt(
            AttemptOutcome.RESOLVED,
            f"Renamed prefix {old_prefix} -> {new_prefix}",
            changes={'name_prefix': {'before': old_prefix, 'after': new_prefix},
                     'backup': str(edit.backup_path) if edit.backup_path else None},
        )


class ExistingResourceReport(RemediationStrategy):
    """Terminal: print import and delete commands for each existing resource."""

    name = "report-existing-resources"

    def __init__(self, context: RunContext, delete_command: Callable[[str, str], str]):
        self.context = context
        self.delete_command = delete_command

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        addresses = finding.facts.get('addresses', {})
        identifiers = finding.facts.get('identifiers', {})
        commands = []
        for name in finding.conflicts:
            if name in addresses:
                commands.append(f"terraform import {addresses[name]} {identifiers.get(name, name)}")
        for name in finding.conflicts:
            commands.append(self.delete_command(name, identifiers.get(name, name)))
        commands.append(
            f"# or set name_prefix = \"{self.context.name_prefix}-{self.context.region}\" in terraform.tfvars"
        )
        return self._attempt(
            AttemptOutcome.FAILED,
            f"{len(finding.conflicts)} existing resource(s) need import or deletion",
            manual_commands=commands,
        )


# CIDR overlaps

class ReuseExistingNetwork(RemediationStrategy):
    """Reuse the VPC that already holds every requested range, if it has internet access."""

    name = "reuse-existing-network"
    destructiveness = Destructiveness.REUSE

    def __init__(self, context: RunContext, inspector: CloudResourceInspector, tfvars: TfvarsEditor):
        self.context = context
        self.inspector = inspector
        self.tfvars = tfvars

    def _candidate_vpc(self, finding: Finding) -> Optional[str]:
        vpc_ids = {collision.vpc_id for collision in finding.facts['collisions']}
        if len(vpc_ids) != 1:
            return None
        return vpc_ids.pop()

    def _subnet_ids(self, vpc_id: str) -> Optional[Dict[str, List[str]]]:
        by_cidr = {subnet.metadata['cidr_block']: subnet.resource_id for subnet in self.inspector.vpc_subnets(vpc_id)}
        public = [by_cidr.get(cidr) for cidr in self.context.public_subnet_cidrs]
        private = [by_cidr.get(cidr) for cidr in self.context.private_subnet_cidrs]
        if None in public or None in private:
            return None
        return {'public': public, 'private': private}

    def is_applicable(self, check: ConflictCheck, finding: Finding) -> bool:
        vpc_id = self._candidate_vpc(finding)
        return (
            vpc_id is not None
            and self.inspector.vpc_has_internet_gateway(vpc_id)
            and self._subnet_ids(vpc_id) is not None
        )

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        vpc_id = self._candidate_vpc(finding)
        subnets = self._subnet_ids(vpc_id)
        edit = self.tfvars.update({
            'use_existing_vpc': True,
            'existing_vpc_id': vpc_id,
            'existing_public_subnet_ids': subnets['public'],
            'existing_private_subnet_ids': subnets['private'],
        }, reason=f"{check.name}: reuse existing network {vpc_id}")
        self.context.reused_network = {
            'vpc_id': vpc_id,
            'public_subnet_ids': subnets['public'],
            'private_subnet_ids': subnets['private'],
        }
        return self._attempt(
            AttemptOutcome.RESOLVED,
            f"Reusing VPC {vpc_id} and its {len(subnets['public']) + len(subnets['private'])} subnets",
            changes={'reused_network': self.context.reused_network,
                     'backup': str(edit.backup_path) if edit.backup_path else None},
        )


PUBLIC_CIDR_POOL = ("10.0.2.0/24", "10.0.3.0/24", "10.0.4.0/24", "10.0.5.0/24", "10.0.6.0/24")
PRIVATE_CIDR_POOL = ("10.0.10.0/24", "10.0.13.0/24", "10.0.14.0/24", "10.0.15.0/24",
                     "10.0.20.0/24", "10.0.21.0/24")


def pick_free_cidrs(requested: Sequence[str], pool: Sequence[str], taken: List[ipaddress.IPv4Network]) -> Optional[List[str]]:
    """Keep requested ranges that are free and fill the rest from ``pool``.

    ``taken`` is extended with every range chosen. Returns None when the pool
    cannot supply enough free ranges.
    """
    chosen = []
    for cidr in list(requested) + [cidr for cidr in pool if cidr not in requested]:
        network = ipaddress.ip_network(cidr)
        if any(network.overlaps(other) for other in taken):
            continue
        chosen.append(cidr)
        taken.append(network)
        if len(chosen) == len(requested):
            return chosen
    return None


class SelectAlternateCidrs(RemediationStrategy):
    """Pick free ranges from fixed pools in 10.0.0.0/16 and persist them."""

    name = "select-alternate-cidrs"
    destructiveness = Destructiveness.RENAME

    def __init__(self, context: RunContext, inspector: CloudResourceInspector, tfvars: TfvarsEditor,
                 public_pool: Sequence[str] = PUBLIC_CIDR_POOL, private_pool: Sequence[str] = PRIVATE_CIDR_POOL):
        self.context = context
        self.inspector = inspector
        self.tfvars = tfvars
        self.public_pool = public_pool
        self.private_pool = private_pool

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        taken = [ipaddress.ip_network(cidr) for cidr in self.inspector.used_cidrs()]
        public = pick_free_cidrs(self.context.public_subnet_cidrs, self.public_pool, taken)
        private = pick_free_cidrs(self.context.private_subnet_cidrs, self.private_pool, taken)
        if public is None or private is None:
            return self._attempt(
                AttemptOutcome.FAILED,
                "Not enough free ranges in the alternate CIDR pools",
            )

        before = {'public': list(self.context.public_subnet_cidrs), 'private': list(self.context.private_subnet_cidrs)}
        edit = self.tfvars.update({
            'public_subnet_cidrs': public,
            'private_subnet_cidrs': private,
        }, reason=f"{check.name}: alternate subnet ranges")
        self.context.public_subnet_cidrs = public
        self.context.private_subnet_cidrs = private
        return self._attempt(
            AttemptOutcome.RESOLVED,
            f"Selected public {', '.join(public)} and private {', '.join(private)}",
            changes={'before': before, 'after': {'public': public, 'private': private},
                     'backup': str(edit.backup_path) if edit.backup_path else None},
        )


class CidrConflictReport(RemediationStrategy):
    """Terminal: list conflicting ranges and the manual options."""

    name = "report-cidr-conflicts"

    def __init__(self, context: RunContext):
        self.context = context

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        collisions = finding.facts['collisions']
        commands = [
            f"aws ec2 delete-subnet --subnet-id {collision.subnet_id} --region {self.context.region}"
            for collision in collisions
        ]
        vpc_ids = sorted({collision.vpc_id for collision in collisions})
        commands.append(
            f"# or reuse: use_existing_vpc = true, existing_vpc_id = \"{vpc_ids[0]}\" in terraform.tfvars"
        )
        commands.append("# or set public_subnet_cidrs / private_subnet_cidrs to free ranges in terraform.tfvars")
        return self._attempt(
            AttemptOutcome.FAILED,
            "Conflicting ranges: " + ", ".join(
                f"{collision.requested_cidr} ({collision.subnet_id} in {collision.vpc_id})"
                for collision in collisions
            ),
            manual_commands=commands,
        )


# Orphaned housekeeping

class DetachAndDelete(RemediationStrategy):
    """Detach everything attached to orphaned resources, then delete them."""

    name = "detach-and-delete"
    destructiveness = Destructiveness.DELETE

    def __init__(self, inspector: CloudResourceInspector):
        self.inspector = inspector

    def apply(self, check: ConflictCheck, finding: Finding) -> RemediationAttempt:
        deleted, failed = [], []
        for resource in finding.facts['resources']:
            result = self.inspector.delete(resource)
            (deleted if result.success else failed).append(resource.resource_id)
            if not result.success:
                logger.warning(result.message)

        if not failed:
            outcome = AttemptOutcome.RESOLVED
        elif deleted:
            outcome = AttemptOutcome.PARTIAL
        else:
            outcome = AttemptOutcome.FAILED
        return self._attempt(
            outcome,
            f"Deleted {len(deleted)} orphaned resource(s), {len(failed)} failed",
            changes={'deleted': deleted, 'failed': failed},
        )
