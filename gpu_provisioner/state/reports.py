"""
Machine-readable reports written for operators when automation stops.
"""
import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from ..core.exceptions import StateError
from ..core.models import ConflictCheck, QuotaIncreaseRequest

logger = logging.getLogger(__name__)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if is_dataclass(value):
        return _to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_jsonable(item) for item in value]
    return value


class ReportWriter:
    """Writes JSON reports into the run's reports directory."""

    def __init__(self, reports_dir: Path):
        self.reports_dir = reports_dir
        self.reports_dir.mkdir(parents=True, exist_ok=True)

    def write(self, name: str, payload: Dict[str, Any]) -> Path:
        """Write ``payload`` to ``<reports_dir>/<name>.json``.

        Raises:
            StateError: If the report cannot be written
        """
        filepath = self.reports_dir / f"{name}.json"
        temp_file = filepath.with_suffix('.tmp')
        document = {'generated_at': datetime.now().isoformat(), **_to_jsonable(payload)}
        try:
            with open(temp_file, 'w') as f:
                json.dump(document, f, indent=2)
            temp_file.replace(filepath)
        except OSError as e:
            raise StateError(f"Failed to write report {filepath}: {e}")
        logger.info(f"Wrote report {filepath}")
        return filepath

    def write_preflight(self, project_key: str, region: str, checks: List[ConflictCheck]) -> Path:
        return self.write('preflight-report', {
            'project': project_key,
            'region': region,
            'blocked': [
                {
                    'check': check.name,
                    'category': check.kind.value,
                    'scope': str(check.scope),
                    'conflicts': check.finding.conflicts if check.finding else [],
                    'summary': check.finding.summary if check.finding else '',
                    'remediation_log': [
                        {
                            'strategy': attempt.strategy,
                            'outcome': attempt.outcome.value,
                            'message': attempt.message,
                        }
                        for attempt in check.remediation_log
                    ],
                    'manual_commands': check.manual_commands,
                }
                for check in checks
            ],
        })

    def write_quota(self, request: QuotaIncreaseRequest) -> Path:
        return self.write('quota-report', {'quota_increase_request': request})

    def write_permissions(self, principal: str, missing: List[str], unverified: bool) -> Path:
        return self.write('permissions-report', {
            'principal': principal,
            'unverified': unverified,
            'missing_permissions': missing,
        })
