"""
Typed adapter over the Terraform CLI.

Every invocation goes through this module and returns structured results;
nothing else in the package runs Terraform or parses its JSON.
"""
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..core.exceptions import EngineError
from ..core.models import ResourcePlanSummary

logger = logging.getLogger(__name__)

# Terraform operation timeouts (in seconds)
INIT_TIMEOUT = 300
PLAN_TIMEOUT = 900
SHOW_TIMEOUT = 120
IMPORT_TIMEOUT = 300
STATE_TIMEOUT = 120
DESTROY_TIMEOUT = 1800


@dataclass
class CommandResult:
    """Outcome of one Terraform command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def parse_plan_changes(plan: Dict) -> ResourcePlanSummary:
    """Count planned changes in ``terraform show -json`` output.

    A replacement shows up as both ``delete`` and ``create`` and is counted
    once as a replace; ``no-op`` and ``read`` actions are ignored.
    """
    to_create = to_update = to_replace = to_destroy = 0
    create_addresses = []

    for change in plan.get('resource_changes', []):
        actions = set(change.get('change', {}).get('actions', []))
        if {'delete', 'create'} <= actions:
            to_replace += 1
        elif 'create' in actions:
            to_create += 1
            create_addresses.append(change['address'])
        elif 'update' in actions:
            to_update += 1
        elif 'delete' in actions:
            to_destroy += 1

    return ResourcePlanSummary(
        to_create=to_create,
        to_update=to_update,
        to_replace=to_replace,
        to_destroy=to_destroy,
        create_addresses=tuple(create_addresses),
    )


class ApplyStream:
    """Line-by-line view of a running ``terraform apply``.

    ``returncode`` is available once iteration is exhausted.
    """

    def __init__(self, process: subprocess.Popen, args: List[str]):
        self.process = process
        self.args = args
        self.returncode: Optional[int] = None

    def __iter__(self) -> Iterator[str]:
        try:
            for line in self.process.stdout:
                yield line.rstrip('\n')
        finally:
            self.process.stdout.close()
            self.returncode = self.process.wait()
            logger.info(f"terraform apply exited with code {self.returncode}")


class TerraformRunner:
    """Runs Terraform commands in one root module directory."""

    def __init__(
        self,
        working_dir: Path,
        binary: str = "terraform",
        env: Optional[Dict[str, str]] = None,
        var_file: Optional[str] = None,
    ):
        """Initialize the runner.

        Args:
            working_dir: Terraform root module directory
            binary: Terraform executable name or path
            env: Extra environment variables (e.g. AWS_PROFILE, TF_VAR_*)
            var_file: Variables file passed to plan, import and destroy
        """
        self.working_dir = Path(working_dir)
        self.binary = binary
        self.var_file = var_file
        self.env = {**os.environ, "TF_IN_AUTOMATION": "1", **(env or {})}

    @property
    def state_file(self) -> Path:
        return self.working_dir / "terraform.tfstate"

    def _command(self, *args: str) -> List[str]:
        return [self.binary, *args]

    def _run(self, args: List[str], timeout: int) -> CommandResult:
        logger.info(f"Running {' '.join(args)} in {self.working_dir}")
        try:
            completed = subprocess.run(
                args,
                cwd=self.working_dir,
                env=self.env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise EngineError(f"Terraform binary '{self.binary}' not found in PATH", command=' '.join(args))
        except subprocess.TimeoutExpired as e:
            raise EngineError(
                f"{' '.join(args)} timed out after {timeout}s",
                command=' '.join(args),
                output=e.stdout if isinstance(e.stdout, str) else None,
            )

        result = CommandResult(args, completed.returncode, completed.stdout or "", completed.stderr or "")
        if not result.ok:
            logger.debug(f"{' '.join(args)} failed ({result.returncode}): {result.output}")
        return result

    def _var_file_args(self) -> List[str]:
        return [f'-var-file={self.var_file}'] if self.var_file else []

    def _require(self, result: CommandResult, what: str) -> CommandResult:
        if not result.ok:
            raise EngineError(f"terraform {what} failed", command=' '.join(result.args), output=result.output)
        return result

    def init(self) -> CommandResult:
        return self._require(
            self._run(self._command('init', '-input=false', '-no-color'), INIT_TIMEOUT), 'init'
        )

    def plan(
        self,
        plan_file: str,
        targets: Optional[List[str]] = None,
        variables: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Write a saved plan.

        Args:
            plan_file: Plan artifact path, relative to the working directory
            targets: Resource addresses to restrict the plan to
            variables: Extra ``-var`` assignments

        Raises:
            EngineError: If planning fails
        """
        args = self._command('plan', '-input=false', '-no-color', f'-out={plan_file}')
        args += self._var_file_args()
        args += [f'-target={address}' for address in targets or []]
        args += [f'-var={key}={value}' for key, value in (variables or {}).items()]
        return self._require(self._run(args, PLAN_TIMEOUT), 'plan')

    def summarize_plan(self, plan_file: str) -> Optional[ResourcePlanSummary]:
        """Change counts of a saved plan, or None if the plan cannot be read."""
        result = self._run(self._command('show', '-json', plan_file), SHOW_TIMEOUT)
        if not result.ok:
            logger.warning(f"Could not read plan {plan_file}: {result.stderr.strip()}")
            return None
        try:
            return parse_plan_changes(json.loads(result.stdout))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Could not parse plan {plan_file}: {e}")
            return None

    def apply(self, plan_file: str) -> ApplyStream:
        """Start applying a saved plan and stream its output."""
        args = self._command('apply', '-input=false', '-auto-approve', '-no-color', plan_file)
        logger.info(f"Running {' '.join(args)} in {self.working_dir}")
        try:
            process = subprocess.Popen(
                args,
                cwd=self.working_dir,
                env=self.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError:
            raise EngineError(f"Terraform binary '{self.binary}' not found in PATH", command=' '.join(args))
        return ApplyStream(process, args)

    def import_resource(self, address: str, identifier: str) -> CommandResult:
        args = self._command('import', '-input=false', '-no-color') + self._var_file_args()
        return self._run(args + [address, identifier], IMPORT_TIMEOUT)

    def state_list(self) -> List[str]:
        """Addresses tracked in state; empty when no state exists yet."""
        result = self._run(self._command('state', 'list'), STATE_TIMEOUT)
        if not result.ok:
            if 'No state file' in result.output:
                return []
            raise EngineError("terraform state list failed", command=' '.join(result.args), output=result.output)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def state_contains(self, address: str) -> bool:
        return address in self.state_list()

    def destroy(self) -> CommandResult:
        args = self._command('destroy', '-input=false', '-auto-approve', '-no-color') + self._var_file_args()
        return self._run(args, DESTROY_TIMEOUT)

    def remove_plan(self, plan_file: str) -> bool:
        """Delete a saved plan so it cannot be applied again."""
        path = self.working_dir / plan_file
        if path.exists():
            path.unlink()
            logger.info(f"Removed plan file {path}")
            return True
        return False
