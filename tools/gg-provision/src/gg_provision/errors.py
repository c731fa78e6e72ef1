"""Error taxonomy for Greengrass provisioning runs."""

from typing import Optional


class ProvisioningError(Exception):
    """Base error for a provisioning run.

    Every subclass names the collaborator that failed so the state machine
    can publish a precise ``error_details`` string.
    """

    component = "Provisioner"

    def __init__(self, cause: str, detail: Optional[str] = None) -> None:
        self.cause = cause
        self.detail = detail
        message = f"{cause}: {detail}" if detail else cause
        super().__init__(message)

    def describe(self) -> str:
        """Render as ``<component>: <cause>[: <detail>]``."""
        return f"{self.component}: {self}"


class DatabaseError(ProvisioningError):
    """Missing/invalid database or missing/malformed device record."""

    component = "DeviceConfigRepository"


class ConnectivityError(ProvisioningError):
    """A required endpoint stayed unreachable after bounded retries."""

    component = "ConnectivityChecker"

    def __init__(self, endpoint: str, detail: Optional[str] = None) -> None:
        self.endpoint = endpoint
        super().__init__(f"endpoint unreachable ({endpoint})", detail)


class CertificateError(ProvisioningError):
    """Issuance, write or permission-tightening failure."""

    component = "CertificateProvisioner"

    ISSUANCE_FAILED = "issuance failed"
    WRITE_FAILED = "write failed"
    PERMISSIONS_FAILED = "permission tightening failed"
    CORRUPT_BUNDLE = "existing bundle is corrupt"


class ConfigWriteError(ProvisioningError):
    """Rendering or atomic write of the runtime configuration failed."""

    component = "ConfigGenerator"


class InstallationError(ProvisioningError):
    """The runtime root holds partial or unreadable provisioning output."""

    component = "InstallationVerifier"


class RunLockedError(ProvisioningError):
    """Another provisioning run holds the runtime-root lock."""

    component = "RunLock"


class InvalidTransition(ProvisioningError):
    """The state machine was asked to make a transition it does not allow."""

    component = "ProvisioningStateMachine"
