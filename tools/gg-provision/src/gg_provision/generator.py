"""Greengrass runtime configuration rendering."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .certificates import CertificateBundle
from .database import DeviceRecord
from .errors import ConfigWriteError
from .fileio import SHARED_MODE, atomic_write

logger = logging.getLogger(__name__)

NUCLEUS_COMPONENT = "aws.greengrass.Nucleus"

RUNTIME_DIRECTORIES = ("config", "certs", "logs", "work", "packages", "deployments")

NUCLEUS_LOGGING = {
    "level": "INFO",
    "fileSizeKB": 1024,
    "totalLogsSizeKB": 25600,
    "format": "JSON",
}

DEPLOYMENT_SETTINGS = {
    "deploymentPollingFrequency": 15,
    "componentStoreMaxSizeBytes": 10737418240,
    "deploymentStatusKeepAliveFrequency": 60,
}


def build_document(record: DeviceRecord, bundle: CertificateBundle, runtime_root: Path) -> dict[str, Any]:
    """Build the Greengrass ``config.yaml`` document.

    Args:
        record: Device record
        bundle: Certificate bundle on disk
        runtime_root: Greengrass root path

    Returns:
        Document as nested dictionaries, in output order. Paths are
        absolute so the document does not depend on the working directory.
    """
    configuration: dict[str, Any] = {
        "awsRegion": record.aws_region,
        "iotRoleAlias": record.role_alias,
        "iotDataEndpoint": record.iot_endpoint,
    }
    if record.role_alias_endpoint:
        configuration["iotCredEndpoint"] = record.role_alias_endpoint
    if record.mqtt_port is not None:
        configuration["mqtt"] = {"port": record.mqtt_port}
    if record.proxy_url:
        configuration["networkProxy"] = {"proxy": {"url": record.proxy_url}}
    configuration["logging"] = dict(NUCLEUS_LOGGING)
    if record.deployment_group:
        configuration.update(DEPLOYMENT_SETTINGS)

    services: dict[str, Any] = {
        NUCLEUS_COMPONENT: {
            "componentType": "NUCLEUS",
            "version": record.nucleus_version,
            "configuration": configuration,
        }
    }
    for component in record.initial_components:
        services.setdefault(component, {})

    return {
        "system": {
            "certificateFilePath": str(bundle.certificate_path.absolute()),
            "privateKeyPath": str(bundle.private_key_path.absolute()),
            "rootCaPath": str(bundle.root_ca_path.absolute()),
            "rootpath": str(Path(runtime_root).absolute()),
            "thingName": record.thing_name,
        },
        "services": services,
    }


class ConfigGenerator:
    """Writes the runtime configuration for a provisioned device.

    Performs no network or database access, so a render can be retried
    freely.
    """

    def __init__(self, runtime_root: Path) -> None:
        self.runtime_root = Path(runtime_root)

    @property
    def default_output_path(self) -> Path:
        """``<runtime_root>/config/config.yaml``."""
        return self.runtime_root / "config" / "config.yaml"

    def prepare_directories(self) -> None:
        """Create the runtime directory skeleton."""
        for name in RUNTIME_DIRECTORIES:
            # certs holds key material
            mode = 0o700 if name == "certs" else 0o755
            (self.runtime_root / name).mkdir(mode=mode, parents=True, exist_ok=True)

    def render(
        self,
        record: DeviceRecord,
        bundle: CertificateBundle,
        output_path: Optional[Path] = None,
    ) -> Path:
        """Render and atomically write the configuration document.

        Args:
            record: Device record
            bundle: Certificate bundle already on disk
            output_path: Target file (default: ``config/config.yaml`` under the root)

        Returns:
            Path of the written document

        Raises:
            ConfigWriteError: If rendering or writing fails
        """
        output_path = Path(output_path) if output_path else self.default_output_path

        try:
            content = yaml.safe_dump(
                build_document(record, bundle, self.runtime_root),
                default_flow_style=False,
                sort_keys=False,
            )
        except yaml.YAMLError as e:
            raise ConfigWriteError("render failed", str(e)) from e

        try:
            self.prepare_directories()
            output_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(output_path, content, mode=SHARED_MODE)
        except OSError as e:
            raise ConfigWriteError("write failed", f"{output_path}: {e}") from e

        logger.info("Wrote Greengrass configuration to %s", output_path)
        return output_path
