"""
Run context passed explicitly to every component of a deployment run.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from rich.console import Console

from .config import DeploymentConfig
from .models import InstanceSelection


@dataclass
class RunContext:
    """Configuration, collaborators and per-run overrides for one project+environment."""
    config: DeploymentConfig
    session: boto3.Session
    console: Console
    state_store: "DeploymentStateStore"
    prompter: "Prompter"
    reports_dir: Path

    # Overrides decided during the run by remediation and failover
    name_prefix: Optional[str] = None
    public_subnet_cidrs: Optional[List[str]] = None
    private_subnet_cidrs: Optional[List[str]] = None
    reused_network: Optional[Dict[str, object]] = None
    availability_zone: Optional[str] = None
    selection: Optional[InstanceSelection] = None

    def __post_init__(self):
        if self.name_prefix is None:
            self.name_prefix = self.config.name_prefix
        if self.public_subnet_cidrs is None:
            self.public_subnet_cidrs = list(self.config.public_subnet_cidrs)
        if self.private_subnet_cidrs is None:
            self.private_subnet_cidrs = list(self.config.private_subnet_cidrs)

    @property
    def region(self) -> str:
        return self.config.region

    @property
    def project_key(self) -> str:
        """Scope of the persisted deployment state."""
        return self.config.name_prefix

    @property
    def planned_subnet_cidrs(self) -> List[str]:
        """CIDRs this run will create; empty once an existing network is reused."""
        if self.reused_network:
            return []
        return list(self.public_subnet_cidrs) + list(self.private_subnet_cidrs)
