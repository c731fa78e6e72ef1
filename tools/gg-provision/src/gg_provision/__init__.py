"""Greengrass Device Provisioning Agent.

This package turns an unprovisioned edge device into a configured AWS IoT
Greengrass v2 installation, including:
- Device record lookup from a local SQLite database
- Cloud endpoint reachability checks
- Certificate bundle materialization with owner-only private keys
- Greengrass runtime configuration rendering
- Atomic JSON status reporting for supervising processes
"""

__version__ = "0.1.0"

from .certificates import BundleVerdict, CertificateBundle, CertificateProvisioner
from .config import ProvisionerConfig
from .connectivity import ConnectivityChecker
from .database import DeviceConfigRepository, DeviceRecord
from .generator import ConfigGenerator
from .machine import ProvisioningStateMachine, RunOutcome, build_state_machine
from .status import ProvisioningState, StatusReporter

__all__ = [
    "BundleVerdict",
    "CertificateBundle",
    "CertificateProvisioner",
    "ProvisionerConfig",
    "ConnectivityChecker",
    "DeviceConfigRepository",
    "DeviceRecord",
    "ConfigGenerator",
    "ProvisioningStateMachine",
    "RunOutcome",
    "build_state_machine",
    "ProvisioningState",
    "StatusReporter",
]
