"""Configuration management for GPU Provisioner."""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


NAME_PATTERN = r'^[a-z0-9][a-z0-9-]*$'


class DeploymentConfig(BaseModel):
    """Configuration model for a single project+environment deployment."""

    project_name: str = Field(default="dpg-infra", description="Project name used in resource names")
    environment: str = Field(default="staging", description="Deployment environment")
    region: str = Field(default="us-east-1", description="Target AWS region")
    instance_type: str = Field(default="g5.4xlarge", description="Requested GPU instance type")

    working_dir: Path = Field(default=Path("."), description="Terraform root module directory")
    tfvars_file: str = Field(default="terraform.tfvars", description="Variables file edited by remediation")
    plan_file: str = Field(default="tfplan", description="Saved plan artifact name")

    required_elastic_ips: int = Field(default=2, ge=0, description="Elastic IPs the deployment allocates")
    required_vpcs: int = Field(default=1, ge=0, description="VPCs the deployment creates")
    public_subnet_cidrs: List[str] = Field(default_factory=lambda: ["10.0.1.0/24", "10.0.2.0/24"])
    private_subnet_cidrs: List[str] = Field(default_factory=lambda: ["10.0.11.0/24", "10.0.12.0/24"])

    default_total_resources: int = Field(default=59, ge=1, description="Resource count used when the plan is unreadable")
    quota_increase_target: int = Field(default=64, ge=1, description="Suggested vCPU quota for increase requests")
    max_zone_failovers: int = Field(default=2, ge=0, description="Zone failover attempts per deployment")

    poll_interval: float = Field(default=5.0, ge=0, description="Seconds between status polls")
    instance_termination_timeout: float = Field(default=300.0, ge=0)
    nat_gateway_timeout: float = Field(default=180.0, ge=0)
    eni_release_timeout: float = Field(default=120.0, ge=0)

    created_at: datetime = Field(default_factory=datetime.utcnow, description="Configuration creation timestamp")
    version: str = Field(default="1.0.0", description="Configuration version")

    @field_validator('project_name', 'environment')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate names that end up inside AWS resource names."""
        if not re.match(NAME_PATTERN, v):
            raise ValueError(
                f"Invalid name: {v}. Use lowercase letters, digits and dashes."
            )
        return v

    @field_validator('region')
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        region_pattern = r'^[a-z]{2,3}-[a-z]+-\d+$'
        if not re.match(region_pattern, v):
            raise ValueError(
                f"Invalid AWS region format: {v}. "
                "Expected format: us-east-1, eu-west-1, ap-southeast-3, etc."
            )
        return v

    @property
    def name_prefix(self) -> str:
        """Naming convention shared by every resource of this deployment."""
        return f"{self.project_name}-{self.environment}"

    @property
    def tfvars_path(self) -> Path:
        return self.working_dir / self.tfvars_file

    @property
    def plan_path(self) -> Path:
        return self.working_dir / self.plan_file


class ConfigManager:
    """Manages the local configuration file for GPU Provisioner."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Optional custom configuration directory path.
                       Defaults to ~/.gpu-provisioner/
        """
        if config_dir is None:
            config_dir = Path.home() / ".gpu-provisioner"

        self.config_dir = config_dir
        self.config_file = config_dir / "config.json"

        self.config_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self.config_dir / "state"

    @property
    def reports_dir(self) -> Path:
        return self.config_dir / "reports"

    def load_config(self) -> Optional[DeploymentConfig]:
        """Load configuration from file.

        Returns:
            DeploymentConfig if file exists and is valid, None otherwise.

        Raises:
            ValueError: If configuration file is corrupted or invalid.
        """
        if not self.config_file.exists():
            return None

        try:
            with open(self.config_file, 'r') as f:
                config_data = json.load(f)

            if isinstance(config_data.get('created_at'), str):
                dt_str = config_data['created_at'].replace('Z', '+00:00')
                config_data['created_at'] = datetime.fromisoformat(dt_str).replace(tzinfo=None)

            return DeploymentConfig(**config_data)

        except (json.JSONDecodeError, ValueError) as e:
            raise ValueError(f"Invalid configuration file: {e}")
        except Exception as e:
            raise ValueError(f"Failed to load configuration: {e}")

    def save_config(self, config: DeploymentConfig) -> None:
        """Save configuration to file.

        Args:
            config: Configuration object to save.

        Raises:
            OSError: If unable to write configuration file.
        """
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            config_dict = config.model_dump(mode='json')
            config_dict['created_at'] = config.created_at.isoformat() + 'Z'

            with open(temp_file, 'w') as f:
                json.dump(config_dict, f, indent=2)

            temp_file.replace(self.config_file)

        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise OSError(f"Failed to save configuration: {e}")

    def config_exists(self) -> bool:
        """Check if configuration file exists."""
        return self.config_file.exists()

    def get_config_path(self) -> Path:
        return self.config_file

    def delete_config(self) -> None:
        """Delete the configuration file.

        Raises:
            OSError: If unable to delete configuration file.
        """
        if self.config_file.exists():
            try:
                self.config_file.unlink()
            except Exception as e:
                raise OSError(f"Failed to delete configuration: {e}")
