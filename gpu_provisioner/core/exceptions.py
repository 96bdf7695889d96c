"""
Core exception classes for GPU Provisioner.
"""


class ProvisionerError(Exception):
    """Base exception for all GPU Provisioner errors."""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(ProvisionerError):
    """Raised when configuration is invalid or missing."""
    pass


class ServiceError(ProvisionerError):
    """Raised when AWS service operations fail."""
    pass


class EngineError(ProvisionerError):
    """Raised when a Terraform invocation fails."""

    def __init__(self, message: str, command: str = None, output: str = None):
        super().__init__(message, details=output)
        self.command = command
        self.output = output


class StateError(ProvisionerError):
    """Raised when state management operations fail."""
    pass


class StateTransitionError(StateError):
    """Raised when a deployment state change is not an allowed transition."""

    def __init__(self, current, requested):
        super().__init__(
            f"Cannot move deployment state from {current.value} to {requested.value}"
        )
        self.current = current
        self.requested = requested


class PreflightBlocked(ProvisionerError):
    """Raised when pre-flight checks leave at least one blocking conflict."""

    def __init__(self, checks, report_path=None):
        names = ", ".join(check.name for check in checks)
        super().__init__(
            f"Deployment blocked by {len(checks)} unresolved conflict(s): {names}",
            details=str(report_path) if report_path else None,
        )
        self.checks = checks
        self.report_path = report_path


class QuotaExhausted(ProvisionerError):
    """Raised when no instance type fits the available vCPU quotas."""

    def __init__(self, request, report_path=None):
        super().__init__(
            f"No instance type fits the vCPU quotas for {request.instance_type} "
            f"in {request.region} ({request.vcpus_required} vCPUs required)",
            details=str(report_path) if report_path else None,
        )
        self.request = request
        self.report_path = report_path


class UserCancelled(ProvisionerError):
    """Raised when the operator cancels an operation."""

    def __init__(self, message: str = "Operation cancelled by user"):
        super().__init__(message)
