"""Idempotency check of an existing Greengrass installation."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .certificates import BundleVerdict, CertificateBundle, inspect_bundle

logger = logging.getLogger(__name__)

REQUIRED_SYSTEM_KEYS = ("thingName", "certificateFilePath", "privateKeyPath", "rootCaPath")


@dataclass
class VerificationResult:
    """Result of an installation check."""

    verdict: BundleVerdict
    details: str
    thing_name: Optional[str] = None
    bundle: Optional[CertificateBundle] = None

    @property
    def passed(self) -> bool:
        """Check if the installation is complete and valid."""
        return self.verdict is BundleVerdict.VALID


class InstallationVerifier:
    """Decides whether a runtime root already holds a provisioned device.

    The configuration document is written last, so it acts as the commit
    marker of a run: without it the installation is MISSING. With it, the
    bundle it references must inspect as VALID, otherwise the installation
    is CORRUPT.
    """

    def __init__(self, config_file: Path) -> None:
        """Initialize verifier.

        Args:
            config_file: Greengrass ``config.yaml`` path
        """
        self.config_file = Path(config_file)

    def check(self) -> VerificationResult:
        """Inspect the configuration document and the bundle it references."""
        if not self.config_file.exists():
            return VerificationResult(BundleVerdict.MISSING, f"{self.config_file} does not exist")

        try:
            with open(self.config_file) as f:
                document = yaml.safe_load(f)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            return VerificationResult(BundleVerdict.CORRUPT, f"unreadable configuration: {e}")

        system = document.get("system") if isinstance(document, dict) else None
        if not isinstance(system, dict):
            return VerificationResult(BundleVerdict.CORRUPT, "configuration has no system section")

        missing = [key for key in REQUIRED_SYSTEM_KEYS if not system.get(key)]
        if missing:
            return VerificationResult(
                BundleVerdict.CORRUPT,
                f"configuration lacks {', '.join(missing)}",
            )

        thing_name = str(system["thingName"])
        bundle = CertificateBundle(
            certificate_path=Path(system["certificateFilePath"]),
            private_key_path=Path(system["privateKeyPath"]),
            root_ca_path=Path(system["rootCaPath"]),
        )
        inspection = inspect_bundle(bundle)
        logger.debug("Bundle for %s inspected as %s: %s", thing_name, inspection.verdict.name, inspection.details)

        if inspection.verdict is BundleVerdict.VALID:
            return VerificationResult(
                BundleVerdict.VALID,
                f"Already provisioned as {thing_name}",
                thing_name=thing_name,
                bundle=bundle,
            )

        # A written config with an unusable bundle is never a fresh install.
        return VerificationResult(
            BundleVerdict.CORRUPT,
            f"configuration present but certificate bundle is unusable: {inspection.details}",
            thing_name=thing_name,
            bundle=bundle,
        )
