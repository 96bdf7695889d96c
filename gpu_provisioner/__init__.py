"""
GPU Provisioner - conflict-aware Terraform orchestration for GPU infrastructure.

Runs pre-flight conflict remediation and quota selection, supervises the
Terraform apply, and recovers from failures by zone failover or rollback.
"""

__version__ = "1.0.0"
__author__ = "GPU Provisioner Team"

from .core.exceptions import ProvisionerError

__all__ = ["ProvisionerError"]
