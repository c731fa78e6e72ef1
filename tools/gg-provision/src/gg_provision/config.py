"""Configuration management for Greengrass provisioning."""

import json
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ConnectivityConfig(BaseModel):
    """Reachability probe configuration."""

    model_config = ConfigDict(frozen=True)

    endpoints: list[str] = Field(
        default_factory=lambda: [
            "https://iot.us-east-1.amazonaws.com",
            "https://s3.amazonaws.com",
        ]
    )
    timeout_seconds: float = 5.0
    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)
    probe_method: str = "HEAD"


class IssuanceConfig(BaseModel):
    """Certificate issuance configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    policy_name: Optional[str] = None
    root_ca_url: str = "https://www.amazontrust.com/repository/AmazonRootCA1.pem"
    timeout_seconds: float = 30.0


class ProvisionerConfig(BaseModel):
    """Complete provisioning configuration.

    Built once at process start and handed to every component.
    """

    model_config = ConfigDict(frozen=True)

    connectivity: ConnectivityConfig = ConnectivityConfig()
    issuance: IssuanceConfig = IssuanceConfig()

    # Paths
    database_path: str = "/opt/greengrass/config/devices.db"
    runtime_root: str = "/greengrass/v2"
    status_file: str = "/var/run/greengrass-provisioning.status"

    # Device selection; detected from the host when unset
    device_identifier: Optional[str] = None

    @property
    def runtime_path(self) -> Path:
        """Runtime root as a Path."""
        return Path(self.runtime_root)

    @property
    def config_file(self) -> Path:
        """Greengrass configuration document path."""
        return self.runtime_path / "config" / "config.yaml"

    @property
    def certs_dir(self) -> Path:
        """Certificate bundle directory."""
        return self.runtime_path / "certs"

    @property
    def lock_file(self) -> Path:
        """Run lock path."""
        return self.runtime_path / ".gg-provision.lock"


def load_config(config_path: Path) -> ProvisionerConfig:
    """Load configuration from file.

    Supports YAML and JSON formats.

    Args:
        config_path: Path to configuration file

    Returns:
        ProvisionerConfig object
    """
    with open(config_path) as f:
        if config_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif config_path.suffix == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")

    return ProvisionerConfig(**(data or {}))


def dump_config(config: ProvisionerConfig, format: str = "yaml") -> str:
    """Serialize configuration.

    Args:
        config: Configuration to serialize
        format: Output format ("yaml" or "json")

    Returns:
        Configuration file content as string
    """
    data = config.model_dump()

    if format == "yaml":
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif format == "json":
        return json.dumps(data, indent=2)
    else:
        raise ValueError(f"Unsupported format: {format}")


def save_config(config: ProvisionerConfig, config_path: Path, format: Optional[str] = None) -> None:
    """Save configuration to file.

    Args:
        config: Configuration to save
        config_path: Output path
        format: "yaml" or "json" (default: from the file suffix)
    """
    if format is None:
        if config_path.suffix in (".yaml", ".yml"):
            format = "yaml"
        elif config_path.suffix == ".json":
            format = "json"
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")

    content = dump_config(config, format)
    with open(config_path, "w") as f:
        f.write(content)


def apply_overrides(config: ProvisionerConfig, **overrides) -> ProvisionerConfig:
    """Return a copy of ``config`` with non-None command-line overrides applied."""
    top_level = {k: v for k, v in overrides.items() if v is not None and k != "endpoints" and k != "issue"}

    if overrides.get("endpoints"):
        top_level["connectivity"] = config.connectivity.model_copy(
            update={"endpoints": list(overrides["endpoints"])}
        )
    if overrides.get("issue") is not None:
        top_level["issuance"] = config.issuance.model_copy(update={"enabled": overrides["issue"]})

    return config.model_copy(update=top_level)
