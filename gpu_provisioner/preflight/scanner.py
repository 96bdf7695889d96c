"""
Conflict scanner: runs the pre-flight battery before Terraform is invoked.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Type

from ..core.context import RunContext
from ..core.exceptions import EngineError, ServiceError, StateError
from ..core.models import CheckStatus, ConflictCheck, ConflictKind, Finding
from ..engine.terraform import TerraformRunner
from ..engine.tfvars import TfvarsEditor
from ..services.inspector import CloudResourceInspector
from ..state.reports import ReportWriter
from .checks import DEFAULT_CHECKS, PreflightCheck
from .strategies import RemediationStrategyChain

logger = logging.getLogger(__name__)

# Capacity first, then names, then ranges; housekeeping last
KIND_ORDER = {
    ConflictKind.CAPACITY_LIMIT: 0,
    ConflictKind.ALREADY_EXISTS: 1,
    ConflictKind.CIDR_OVERLAP: 2,
    ConflictKind.ORPHANED_ROLE: 3,
    ConflictKind.ORPHANED_RULE: 3,
}


@dataclass
class ScanReport:
    """Outcome of one pre-flight scan."""
    checks: List[ConflictCheck] = field(default_factory=list)
    overridden: bool = False
    report_path: Optional[Path] = None

    @property
    def blocked(self) -> List[ConflictCheck]:
        return [check for check in self.checks if check.blocking and check.status is CheckStatus.BLOCKED]

    @property
    def warnings(self) -> List[ConflictCheck]:
        return [check for check in self.checks if not check.blocking and check.status is CheckStatus.BLOCKED]

    @property
    def passed(self) -> bool:
        return not self.blocked or self.overridden


class ConflictScanner:
    """Runs every check, walks remediation chains and fails closed on blocked checks."""

    def __init__(self, context: RunContext, checks: Sequence[PreflightCheck], reports: ReportWriter):
        self.context = context
        self.checks = sorted(checks, key=lambda check: KIND_ORDER[check.kind])
        self.reports = reports

    @classmethod
    def with_default_checks(
        cls,
        context: RunContext,
        inspector: CloudResourceInspector,
        engine: TerraformRunner,
        tfvars: TfvarsEditor,
        check_types: Sequence[Type[PreflightCheck]] = DEFAULT_CHECKS,
    ) -> "ConflictScanner":
        checks = [check_type(context, inspector, engine, tfvars) for check_type in check_types]
        return cls(context, checks, ReportWriter(context.reports_dir))

    def scan(self, allow_override: bool = False) -> ScanReport:
        """Run the battery once.

        Args:
            allow_override: Operator escalation to proceed despite blocked checks

        Returns:
            ScanReport; ``passed`` is False while a blocking check is Blocked
        """
        report = ScanReport()
        for definition in self.checks:
            check = self.run_check(definition)
            report.checks.append(check)

        for check in report.warnings:
            logger.warning(f"Housekeeping check {check.name} left {check.finding.summary}")

        if report.blocked:
            report.report_path = self.reports.write_preflight(
                self.context.project_key, self.context.region, report.blocked
            )
            for check in report.blocked:
                logger.error(f"DEPLOYMENT BLOCKED: {check.kind.value} ({check.name}): {check.finding.summary}")
            if allow_override:
                logger.warning(
                    f"Operator override: proceeding with {len(report.blocked)} blocked check(s)"
                )
                report.overridden = True
        return report

    def run_check(self, definition: PreflightCheck) -> ConflictCheck:
        """Inspect, remediate, re-verify and conclude one check."""
        check = ConflictCheck(
            name=definition.name,
            kind=definition.kind,
            scope=definition.scope(),
            blocking=definition.blocking,
        )
        logger.info(f"Checking {check.name} ({check.scope})")

        try:
            finding = definition.inspect()
            if finding.has_conflict:
                chain = RemediationStrategyChain(definition.kind, definition.strategies())
                finding = chain.remediate(check, finding, definition.inspect)
                status = CheckStatus.BLOCKED if finding.has_conflict else CheckStatus.REMEDIATED
            else:
                status = CheckStatus.PASS
        except (ServiceError, EngineError, StateError) as e:
            logger.warning(f"{check.name}: inspection failed: {e}")
            finding = Finding([check.name], f"Inspection failed: {e}")
            status = CheckStatus.BLOCKED

        check.conclude(status, finding)
        logger.info(f"{check.name}: {status.value}")
        return check
