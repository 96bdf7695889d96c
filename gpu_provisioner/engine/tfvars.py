"""
In-place editing of terraform.tfvars with a backup before every change.
"""
import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ASSIGNMENT = re.compile(r'^\s*(?P<key>[A-Za-z_][A-Za-z0-9_-]*)\s*=\s*(?P<value>.*?)\s*$')


@dataclass
class TfvarsEdit:
    """Before/after record of one automated edit."""
    path: Path
    backup_path: Optional[Path]
    reason: str
    before: Dict[str, Optional[str]] = field(default_factory=dict)
    after: Dict[str, str] = field(default_factory=dict)


def render_value(value: Any) -> str:
    """Render a Python value as an HCL literal."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return '[' + ', '.join(render_value(item) for item in value) + ']'
    return json.dumps(str(value))


class TfvarsEditor:
    """Reads and rewrites top-level assignments of a tfvars file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Dict[str, str]:
        """Top-level assignments as raw HCL value text."""
        if not self.path.exists():
            return {}
        values = {}
        lines = self.path.read_text().splitlines()
        index = 0
        while index < len(lines):
            match = ASSIGNMENT.match(lines[index])
            index += 1
            if not match:
                continue
            value = match.group('value')
            # Multi-line list: gather until the closing bracket
            if value.startswith('[') and not value.rstrip().endswith(']'):
                parts = [value]
                while index < len(lines):
                    parts.append(lines[index].strip())
                    index += 1
                    if parts[-1].endswith(']'):
                        break
                value = ' '.join(parts)
            values[match.group('key')] = value
        return values

    def get(self, key: str) -> Optional[str]:
        """Value of ``key`` with surrounding quotes removed, if it is a string."""
        raw = self.read().get(key)
        if raw is None:
            return None
        if raw.startswith('"') and raw.endswith('"'):
            return json.loads(raw)
        return raw

    def backup(self) -> Optional[Path]:
        if not self.path.exists():
            return None
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        backup_path = self.path.with_name(f"{self.path.name}.backup.{stamp}")
        shutil.copy2(self.path, backup_path)
        logger.info(f"Backed up {self.path} to {backup_path}")
        return backup_path

    def update(self, values: Dict[str, Any], reason: str) -> TfvarsEdit:
        """Set several variables at once after backing up the file.

        Existing assignments are replaced in place; new ones are appended.

        Args:
            values: Variable name to Python value
            reason: Why the edit is made, recorded in the log

        Returns:
            TfvarsEdit describing the change

        Raises:
            ConfigurationError: If the file cannot be written
        """
        current = self.read()
        rendered = {key: render_value(value) for key, value in values.items()}
        edit = TfvarsEdit(
            path=self.path,
            backup_path=None,
            reason=reason,
            before={key: current.get(key) for key in rendered},
            after=rendered,
        )

        try:
            edit.backup_path = self.backup()
            lines = self.path.read_text().splitlines() if self.path.exists() else []
            output: List[str] = []
            written = set()
            index = 0
            while index < len(lines):
                line = lines[index]
                index += 1
                match = ASSIGNMENT.match(line)
                if not match or match.group('key') not in rendered:
                    output.append(line)
                    continue
                key = match.group('key')
                value = match.group('value')
                if value.startswith('[') and not value.rstrip().endswith(']'):
                    while index < len(lines) and not lines[index].strip().endswith(']'):
                        index += 1
                    index += 1
                output.append(f"{key} = {rendered[key]}")
                written.add(key)

            missing = [key for key in rendered if key not in written]
            if missing:
                output.append(f"# {reason}")
                output.extend(f"{key} = {rendered[key]}" for key in missing)

            temp_file = self.path.with_name(self.path.name + '.tmp')
            temp_file.write_text('\n'.join(output) + '\n')
            temp_file.replace(self.path)
        except OSError as e:
            raise ConfigurationError(f"Failed to update {self.path}: {e}")

        for key in rendered:
            logger.info(f"{self.path.name}: {key}: {edit.before[key]} -> {edit.after[key]} ({reason})")
        return edit
