"""
Main CLI entry point for GPU Provisioner.

Provides the ``gpu-provisioner`` command group.
"""

import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from gpu_provisioner import __version__
from gpu_provisioner.cli.interactive import FailurePolicy, Prompter
from gpu_provisioner.core.config import ConfigManager, DeploymentConfig
from gpu_provisioner.core.context import RunContext
from gpu_provisioner.core.exceptions import (
    ConfigurationError, EngineError, PreflightBlocked, ProvisionerError, QuotaExhausted,
    ServiceError, StateError, UserCancelled,
)
from gpu_provisioner.core.models import CheckStatus, DeploymentState
from gpu_provisioner.deploy.cleanup import CleanupOrchestrator
from gpu_provisioner.deploy.pipeline import DeploymentPipeline
from gpu_provisioner.deploy.rollback import RollbackCoordinator
from gpu_provisioner.engine.terraform import TerraformRunner
from gpu_provisioner.engine.tfvars import TfvarsEditor
from gpu_provisioner.preflight.permissions import PermissionChecker
from gpu_provisioner.preflight.quota import QuotaAdvisor
from gpu_provisioner.preflight.scanner import ConflictScanner
from gpu_provisioner.services.base import WaitSettings
from gpu_provisioner.services.inspector import CloudResourceInspector
from gpu_provisioner.state.deployment_state import FileDeploymentStateStore
from gpu_provisioner.state.reports import ReportWriter


console = Console()

# Exit codes for different error types
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_PREFLIGHT_BLOCKED = 3
EXIT_SERVICE_ERROR = 4
EXIT_ENGINE_ERROR = 5
EXIT_DEPLOY_FAILED = 6
EXIT_ROLLBACK_FAILED = 7
EXIT_QUOTA_EXHAUSTED = 8
EXIT_USER_CANCELLED = 130

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
AUTO_LOADED_TFVARS = "terraform.tfvars"


def configure_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Send package logs to stderr through rich and optionally to a file."""
    package_logger = logging.getLogger("gpu_provisioner")
    package_logger.setLevel(logging.DEBUG)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=Console(stderr=True),
        level=logging.DEBUG if verbose else logging.WARNING,
        show_path=False,
    )
    package_logger.addHandler(rich_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(file_handler)


def handle_errors(command):
    """Map provisioner exceptions to exit codes."""

    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except (KeyboardInterrupt, UserCancelled):
            console.print("\n⚠️  [yellow]Operation cancelled by user[/yellow]")
            sys.exit(EXIT_USER_CANCELLED)
        except PreflightBlocked as e:
            console.print(f"❌ [red]{e}[/red]")
            for check in e.checks:
                for command_line in check.manual_commands:
                    console.print(f"   {command_line}")
            if e.report_path:
                console.print(f"Report written to {e.report_path}")
            sys.exit(EXIT_PREFLIGHT_BLOCKED)
        except QuotaExhausted as e:
            console.print(f"❌ [red]{e}[/red]")
            _print_quota_request(e.request)
            if e.report_path:
                console.print(f"Report written to {e.report_path}")
            sys.exit(EXIT_QUOTA_EXHAUSTED)
        except ConfigurationError as e:
            console.print(f"❌ [red]Configuration error: {e}[/red]")
            sys.exit(EXIT_CONFIG_ERROR)
        except ServiceError as e:
            console.print(f"❌ [red]Service error: {e}[/red]")
            sys.exit(EXIT_SERVICE_ERROR)
        except (ClientError, BotoCoreError) as e:
            console.print(f"❌ [red]AWS error: {e}[/red]")
            sys.exit(EXIT_SERVICE_ERROR)
        except EngineError as e:
            console.print(f"❌ [red]Terraform error: {e}[/red]")
            if e.output:
                console.print(Panel(e.output.strip()[-2000:], title="terraform output", border_style="red"))
            sys.exit(EXIT_ENGINE_ERROR)
        except (StateError, ProvisionerError) as e:
            console.print(f"❌ [red]{e}[/red]")
            sys.exit(EXIT_GENERAL_ERROR)
        except Exception as e:
            console.print(f"💥 [red]Unexpected error: {e}[/red]")
            console.print("[dim]Please report this issue with the full error message.[/dim]")
            sys.exit(EXIT_GENERAL_ERROR)

    return wrapper


def _print_quota_request(request) -> None:
    table = Table(title=f"Quota increase for {request.instance_type} in {request.region}")
    table.add_column("Pricing")
    table.add_column("Quota code")
    table.add_column("Current", justify="right")
    table.add_column("Suggested", justify="right")
    for pricing, code in request.quota_codes.items():
        table.add_row(pricing, code, f"{request.current_quotas.get(pricing, 0):g}", str(request.suggested_value))
    console.print(table)
    console.print(f"Console: {request.console_url}")
    for command_line in request.cli_commands:
        console.print(f"   {command_line}")


def load_config(options: dict) -> DeploymentConfig:
    """Load the saved configuration and apply command line overrides.

    Raises:
        ConfigurationError: If the saved file or an override is invalid
    """
    manager: ConfigManager = options['config_manager']
    try:
        config = manager.load_config() or DeploymentConfig()
        overrides = {key: value for key, value in options['overrides'].items() if value is not None}
        if overrides:
            config = DeploymentConfig(**{**config.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(str(e))
    return config


def build_context(options: dict, assume_yes: bool = False,
                  on_failure: FailurePolicy = FailurePolicy.ASK) -> RunContext:
    config = load_config(options)
    manager: ConfigManager = options['config_manager']
    session = boto3.Session(profile_name=options.get('profile'), region_name=config.region)
    return RunContext(
        config=config,
        session=session,
        console=console,
        state_store=FileDeploymentStateStore(manager.state_dir),
        prompter=Prompter(console, assume_yes=assume_yes, on_failure=on_failure),
        reports_dir=manager.reports_dir,
    )


def build_engine(context: RunContext) -> TerraformRunner:
    tfvars_file = context.config.tfvars_file
    return TerraformRunner(
        context.config.working_dir,
        var_file=None if tfvars_file == AUTO_LOADED_TFVARS else tfvars_file,
    )


def build_inspector(context: RunContext) -> CloudResourceInspector:
    return CloudResourceInspector(context.session, context.region, WaitSettings.from_config(context.config))


def _print_scan(report) -> None:
    table = Table(title="Pre-flight checks")
    table.add_column("Check")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Summary")
    styles = {
        CheckStatus.PASS: "green",
        CheckStatus.REMEDIATED: "cyan",
        CheckStatus.BLOCKED: "red",
        CheckStatus.PENDING: "dim",
    }
    for check in report.checks:
        status = check.status
        label = status.value if check.blocking or status is not CheckStatus.BLOCKED else "warning"
        table.add_row(
            check.name,
            check.kind.value,
            f"[{styles[status]}]{label}[/{styles[status]}]",
            check.finding.summary if check.finding else "",
        )
    console.print(table)


@click.group()
@click.option("--region", help="AWS region (defaults to the configured region)")
@click.option("--project", "project_name", help="Project name used in resource names")
@click.option("--environment", help="Deployment environment")
@click.option("--working-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Terraform root module directory")
@click.option("--profile", help="AWS named profile")
@click.option("--config-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Configuration directory (defaults to ~/.gpu-provisioner)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Write a debug log to this file")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    region: Optional[str],
    project_name: Optional[str],
    environment: Optional[str],
    working_dir: Optional[Path],
    profile: Optional[str],
    config_dir: Optional[Path],
    verbose: bool,
    log_file: Optional[Path],
) -> None:
    """
    GPU Provisioner - conflict-aware Terraform deployments of GPU infrastructure.

    Checks the account for conflicts before Terraform runs, watches the apply
    and recovers from failures through zone failover or rollback.
    """
    configure_logging(verbose, log_file)
    ctx.ensure_object(dict)
    ctx.obj['config_manager'] = ConfigManager(config_dir)
    ctx.obj['profile'] = profile
    ctx.obj['overrides'] = {
        'region': region,
        'project_name': project_name,
        'environment': environment,
        'working_dir': working_dir,
    }


@main.command()
@click.option("--instance-type", help="Requested GPU instance type")
@click.option("--tfvars-file", help="Variables file in the working directory")
@click.pass_obj
@handle_errors
def configure(options: dict, instance_type: Optional[str], tfvars_file: Optional[str]) -> None:
    """Save project, environment, region and Terraform settings."""
    options['overrides'].update({'instance_type': instance_type, 'tfvars_file': tfvars_file})
    config = load_config(options)
    manager: ConfigManager = options['config_manager']
    try:
        manager.save_config(config)
    except OSError as e:
        raise ConfigurationError(str(e))

    table = Table(title="Configuration", show_header=False)
    for key in ('project_name', 'environment', 'region', 'instance_type', 'working_dir', 'tfvars_file'):
        table.add_row(key, str(getattr(config, key)))
    table.add_row('name_prefix', config.name_prefix)
    console.print(table)
    console.print(f"✅ [green]Saved to {manager.get_config_path()}[/green]")


@main.command()
@click.option("--plan-only", is_flag=True, help="Stop after writing and reviewing the plan")
@click.option("--override-preflight", is_flag=True, help="Proceed even if pre-flight checks stay blocked")
@click.option("--on-failure", type=click.Choice([policy.value for policy in FailurePolicy]),
              default=FailurePolicy.ASK.value, show_default=True,
              help="What to do with resources left by a failed apply")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Answer yes to confirmations")
@click.pass_obj
@handle_errors
def deploy(options: dict, plan_only: bool, override_preflight: bool, on_failure: str, assume_yes: bool) -> None:
    """Select an instance type, run pre-flight checks, plan and apply."""
    context = build_context(options, assume_yes=assume_yes, on_failure=FailurePolicy(on_failure))
    if override_preflight and not context.prompter.confirm(
        "Proceed even if pre-flight checks remain blocked?", default=False
    ):
        raise UserCancelled()

    engine = build_engine(context)
    pipeline = DeploymentPipeline(
        context, build_inspector(context), engine, TfvarsEditor(context.config.tfvars_path)
    )
    result = pipeline.deploy(plan_only=plan_only, allow_override=override_preflight)

    if result.scan is not None:
        _print_scan(result.scan)
    if result.selection is not None:
        console.print(
            f"Instance: [bold]{result.selection.instance_type}[/bold] ({result.selection.pricing_model.value})"
        )
    if plan_only:
        summary = result.plan
        if summary is not None:
            console.print(
                f"Plan: {summary.to_create} to create, {summary.to_update} to update, "
                f"{summary.to_replace} to replace, {summary.to_destroy} to destroy"
            )
        console.print(f"✅ [green]Plan saved to {context.config.plan_path}[/green]")
        return

    if result.succeeded:
        console.print(f"✅ [green]Deployment of {context.project_key} complete[/green]")
        return
    if result.classification is not None:
        console.print(f"[red]Failure category: {result.classification.category.value}[/red]")
        console.print(f"[dim]{result.classification.hint}[/dim]")
    if result.state is DeploymentState.ROLLBACK_FAILED:
        sys.exit(EXIT_ROLLBACK_FAILED)
    if result.state is DeploymentState.ROLLED_BACK:
        console.print("[yellow]Deployment failed and was rolled back[/yellow]")
    sys.exit(EXIT_DEPLOY_FAILED)


@main.command()
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Answer yes to confirmations")
@click.pass_obj
@handle_errors
def preflight(options: dict, assume_yes: bool) -> None:
    """Run the pre-flight conflict checks and their remediations."""
    context = build_context(options, assume_yes=assume_yes)
    engine = build_engine(context)
    engine.init()
    scanner = ConflictScanner.with_default_checks(
        context, build_inspector(context), engine, TfvarsEditor(context.config.tfvars_path)
    )
    report = scanner.scan()
    _print_scan(report)
    if not report.passed:
        raise PreflightBlocked(report.blocked, report.report_path)
    console.print("✅ [green]All pre-flight checks passed[/green]")


@main.command()
@click.option("--instance-type", help="Instance type to evaluate (defaults to the configured type)")
@click.option("--request-increase", is_flag=True, help="Submit the suggested on-demand quota increase")
@click.pass_obj
@handle_errors
def quota(options: dict, instance_type: Optional[str], request_increase: bool) -> None:
    """Show which instance type and pricing model fit the vCPU quotas."""
    context = build_context(options)
    advisor = QuotaAdvisor(
        build_inspector(context), context.region, ReportWriter(context.reports_dir),
        increase_target=context.config.quota_increase_target,
    )
    try:
        selection = advisor.select(instance_type or context.config.instance_type)
    except QuotaExhausted as e:
        if request_increase:
            request_id = advisor.request_increase(e.request)
            console.print(f"Quota increase requested: {request_id}")
        raise

    snapshot = selection.snapshot
    table = Table(title=f"vCPU quotas in {context.region}", show_header=False)
    table.add_row("Instance type", selection.instance_type)
    if selection.substituted:
        table.add_row("Requested", selection.requested_instance_type)
    table.add_row("Pricing", selection.pricing_model.value)
    table.add_row("vCPUs required", str(snapshot.vcpus_required_for_instance_type))
    table.add_row("Spot quota", f"{snapshot.spot_vcpu_quota:g}")
    table.add_row("On-demand quota", f"{snapshot.on_demand_vcpu_quota:g}")
    console.print(table)


@main.command()
@click.pass_obj
@handle_errors
def permissions(options: dict) -> None:
    """Simulate the IAM actions a deployment needs."""
    context = build_context(options)
    checker = PermissionChecker(build_inspector(context), ReportWriter(context.reports_dir))
    report = checker.check()

    console.print(f"Principal: {report.principal}")
    if report.unverified:
        console.print("[yellow]This identity may not simulate policies; permissions are unverified[/yellow]")
        return
    if report.ok:
        console.print("✅ [green]All required actions are allowed[/green]")
        return
    table = Table(title="Denied actions")
    table.add_column("Action")
    for action in report.missing:
        table.add_row(action)
    console.print(table)
    if report.report_path:
        console.print(f"Report written to {report.report_path}")
    sys.exit(EXIT_PREFLIGHT_BLOCKED)


@main.command()
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Answer yes to confirmations")
@click.pass_obj
@handle_errors
def rollback(options: dict, assume_yes: bool) -> None:
    """Destroy the resources of a failed or partial deployment."""
    context = build_context(options, assume_yes=assume_yes)
    if not context.prompter.confirm(f"Run terraform destroy for {context.project_key}?", default=False):
        raise UserCancelled()
    state = RollbackCoordinator(context, build_engine(context)).rollback()
    if state is DeploymentState.ROLLBACK_FAILED:
        sys.exit(EXIT_ROLLBACK_FAILED)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting")
@click.option("--force", is_flag=True, help="Skip confirmation and remove the local Terraform state")
@click.option("--prefix", help="Resource name prefix (defaults to <project>-<environment>)")
@click.pass_obj
@handle_errors
def cleanup(options: dict, dry_run: bool, force: bool, prefix: Optional[str]) -> None:
    """Delete every resource matching the naming prefix, in dependency order."""
    context = build_context(options)
    orchestrator = CleanupOrchestrator(context, build_inspector(context))
    report = orchestrator.run(prefix=prefix, dry_run=dry_run, force=force)

    if dry_run:
        console.print(f"[DRY RUN] {len(report.planned)} resource(s) would be deleted")
        return
    console.print(
        f"Deleted: {len(report.deleted)}  Failed: {len(report.failed)}  Skipped: {len(report.skipped)}"
    )
    if report.state_backup:
        console.print(f"Terraform state moved to {report.state_backup}")
    if not report.succeeded:
        for error in report.errors:
            console.print(f"[red]{error}[/red]")
        sys.exit(EXIT_SERVICE_ERROR)


@main.command()
@click.pass_obj
@handle_errors
def status(options: dict) -> None:
    """Show the recorded deployment state and effective configuration."""
    context = build_context(options)
    store = context.state_store
    state = store.get(context.project_key)
    updated = store.updated_at(context.project_key)

    table = Table(title=f"Deployment {context.project_key}", show_header=False)
    table.add_row("State", state.value)
    table.add_row("Updated", updated.isoformat() if updated else "never")
    table.add_row("Region", context.region)
    table.add_row("Instance type", context.config.instance_type)
    table.add_row("Working directory", str(context.config.working_dir))
    console.print(table)


if __name__ == "__main__":
    main()
