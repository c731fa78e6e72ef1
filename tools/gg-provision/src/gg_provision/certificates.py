"""Certificate bundle materialization for Greengrass devices.

A bundle is the device certificate, its private key and the root CA chain,
written under ``<runtime_root>/certs``:

- ``<thing>.cert.pem`` - device certificate (0640)
- ``<thing>.private.key`` - private key (0600, never wider)
- ``root.ca.pem`` - root CA chain (0640)

Key material comes from the device record when the provisioning pipeline
pre-issued it, otherwise from a CertificateIssuer (AWS IoT by default).
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from Crypto.Hash import SHA3_256
from Crypto.PublicKey import ECC, RSA

from .config import IssuanceConfig
from .database import DeviceRecord
from .errors import CertificateError
from .fileio import SECRET_MODE, SHARED_MODE, InsecurePermissionsError, atomic_write, file_mode

logger = logging.getLogger(__name__)

ROOT_CA_FILENAME = "root.ca.pem"

PEM_CERTIFICATE_HEADER = "-----BEGIN CERTIFICATE-----"

PrivateKey = Union[RSA.RsaKey, ECC.EccKey]


class BundleVerdict(Enum):
    """Typed result of the idempotency probe."""

    VALID = "valid"
    MISSING = "missing"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class BundleInspection:
    """Verdict plus the reason for it."""

    verdict: BundleVerdict
    details: str


@dataclass(frozen=True)
class CertificateBundle:
    """Paths of the three bundle files."""

    certificate_path: Path
    private_key_path: Path
    root_ca_path: Path
    fingerprint: Optional[str] = None

    @classmethod
    def for_thing(cls, certs_dir: Path, thing_name: str) -> "CertificateBundle":
        """Expected bundle location for a thing."""
        certs_dir = Path(certs_dir)
        return cls(
            certificate_path=certs_dir / f"{thing_name}.cert.pem",
            private_key_path=certs_dir / f"{thing_name}.private.key",
            root_ca_path=certs_dir / ROOT_CA_FILENAME,
        )

    @property
    def paths(self) -> tuple[Path, Path, Path]:
        """Certificate, private key and root CA paths."""
        return (self.certificate_path, self.private_key_path, self.root_ca_path)


@dataclass(frozen=True)
class IssuedCertificate:
    """Key material handed out by an issuer."""

    certificate_pem: str
    private_key_pem: str
    certificate_id: Optional[str] = None


def load_certificates(pem: str) -> list[x509.Certificate]:
    """Parse every X.509 certificate in a PEM document.

    Raises:
        ValueError: If the document holds no well-formed certificate
    """
    return x509.load_pem_x509_certificates(pem.encode())


def is_certificate(pem: str) -> bool:
    """Check if ``pem`` holds at least one well-formed X.509 certificate."""
    try:
        load_certificates(pem)
    except ValueError:
        return False
    return True


def load_private_key(pem: str) -> Optional[PrivateKey]:
    """Parse an RSA or EC private key, or return None."""
    for loader in (RSA.import_key, ECC.import_key):
        try:
            key = loader(pem)
        except (ValueError, IndexError, TypeError):
            continue
        return key if key.has_private() else None
    return None


def private_key_parses(pem: str) -> bool:
    """Check if ``pem`` is a readable RSA or EC private key."""
    return load_private_key(pem) is not None


def key_matches_certificate(certificate_pem: str, private_key_pem: str) -> bool:
    """Check that the certificate carries the public half of the private key."""
    private_key = load_private_key(private_key_pem)
    if private_key is None:
        return False

    loader = RSA.import_key if isinstance(private_key, RSA.RsaKey) else ECC.import_key
    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem.encode())
        spki = certificate.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
        public_key = loader(spki)
    except (ValueError, IndexError, TypeError, UnsupportedAlgorithm):
        return False
    return public_key == private_key.public_key()


def certificate_fingerprint(pem: str) -> str:
    """SHA3-256 fingerprint of a certificate PEM."""
    return SHA3_256.new(pem.strip().encode()).hexdigest()


def inspect_bundle(bundle: CertificateBundle) -> BundleInspection:
    """Decide whether a bundle on disk is complete and usable.

    All three files are checked, so a partially written bundle is never
    mistaken for a valid one.
    """
    present = [p for p in bundle.paths if p.exists()]
    if not present:
        return BundleInspection(BundleVerdict.MISSING, "no bundle files present")

    absent = [p.name for p in bundle.paths if p not in present]
    if absent:
        return BundleInspection(BundleVerdict.CORRUPT, f"missing {', '.join(absent)}")

    try:
        for path in bundle.paths:
            if not path.is_file() or path.stat().st_size == 0:
                return BundleInspection(BundleVerdict.CORRUPT, f"{path.name} is empty or not a file")

        mode = file_mode(bundle.private_key_path)
        if mode & 0o077:
            return BundleInspection(
                BundleVerdict.CORRUPT,
                f"{bundle.private_key_path.name} has mode {mode:04o}, expected owner-only access",
            )

        certificate_pem = bundle.certificate_path.read_text()
        private_key_pem = bundle.private_key_path.read_text()

        if not is_certificate(certificate_pem):
            return BundleInspection(BundleVerdict.CORRUPT, f"{bundle.certificate_path.name} holds no certificate")
        if not is_certificate(bundle.root_ca_path.read_text()):
            return BundleInspection(BundleVerdict.CORRUPT, f"{bundle.root_ca_path.name} holds no certificate")
        if not private_key_parses(private_key_pem):
            return BundleInspection(BundleVerdict.CORRUPT, f"{bundle.private_key_path.name} is not a private key")
        if not key_matches_certificate(certificate_pem, private_key_pem):
            return BundleInspection(
                BundleVerdict.CORRUPT,
                f"{bundle.certificate_path.name} does not match {bundle.private_key_path.name}",
            )
    except (OSError, UnicodeDecodeError) as e:
        return BundleInspection(BundleVerdict.CORRUPT, f"unreadable bundle file: {e}")

    return BundleInspection(BundleVerdict.VALID, "certificate, private key and root CA present")


@runtime_checkable
class CertificateIssuer(Protocol):
    """Protocol for services that issue a device certificate."""

    def issue(self, record: DeviceRecord) -> IssuedCertificate:
        """Issue a key pair and certificate for the record's thing."""
        ...


class AwsIotCertificateIssuer:
    """Issues certificates through the AWS IoT control plane.

    The certificate is created active and attached to the thing (and to an
    IoT policy when one is configured).
    """

    def __init__(
        self,
        config: Optional[IssuanceConfig] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        """Initialize issuer.

        Args:
            config: Issuance configuration
            client_factory: Returns an IoT client for a region (default: boto3)
        """
        self.config = config or IssuanceConfig()
        self._client_factory = client_factory or self._default_client

    def _default_client(self, region: str) -> Any:
        timeout = self.config.timeout_seconds
        return boto3.client(
            "iot",
            region_name=region,
            config=BotoConfig(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 2},
            ),
        )

    def issue(self, record: DeviceRecord) -> IssuedCertificate:
        """Create keys and an active certificate for ``record.thing_name``."""
        logger.info("Requesting certificate for thing %s in %s", record.thing_name, record.aws_region)
        try:
            iot = self._client_factory(record.aws_region)
            response = iot.create_keys_and_certificate(setAsActive=True)
            cert_arn = response["certificateArn"]

            iot.attach_thing_principal(thingName=record.thing_name, principal=cert_arn)
            if self.config.policy_name:
                iot.attach_policy(policyName=self.config.policy_name, target=cert_arn)

            issued = IssuedCertificate(
                certificate_pem=response["certificatePem"],
                private_key_pem=response["keyPair"]["PrivateKey"],
                certificate_id=response.get("certificateId"),
            )
        except (BotoCoreError, ClientError) as e:
            raise CertificateError(CertificateError.ISSUANCE_FAILED, str(e)) from e
        except KeyError as e:
            raise CertificateError(CertificateError.ISSUANCE_FAILED, f"incomplete response, missing {e}") from e

        logger.info("Issued certificate %s", issued.certificate_id or "<unknown>")
        return issued


def fetch_root_ca(
    url: str,
    timeout_seconds: float = 30.0,
    session: Optional[requests.Session] = None,
) -> str:
    """Download a root CA certificate.

    Raises:
        CertificateError: If the download fails or is not a certificate
    """
    session = session or requests.Session()
    try:
        response = session.get(url, timeout=timeout_seconds)
        response.raise_for_status()
    except requests.RequestException as e:
        raise CertificateError(CertificateError.ISSUANCE_FAILED, f"root CA download from {url} failed: {e}") from e

    if not is_certificate(response.text):
        raise CertificateError(CertificateError.ISSUANCE_FAILED, f"{url} did not return a certificate")
    return response.text


class CertificateProvisioner:
    """Ensures a device's certificate bundle exists on disk."""

    def __init__(
        self,
        certs_dir: Path,
        config: Optional[IssuanceConfig] = None,
        issuer: Optional[CertificateIssuer] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize certificate provisioner.

        Args:
            certs_dir: Directory receiving the bundle
            config: Issuance configuration
            issuer: Certificate issuer (default: AWS IoT)
            session: HTTP session for the root CA download
        """
        self.certs_dir = Path(certs_dir)
        self.config = config or IssuanceConfig()
        self.issuer = issuer or AwsIotCertificateIssuer(self.config)
        self.session = session

    def bundle_for(self, record: DeviceRecord) -> CertificateBundle:
        """Expected bundle for a device record."""
        return CertificateBundle.for_thing(self.certs_dir, record.thing_name)

    def ensure_provisioned(self, record: DeviceRecord) -> CertificateBundle:
        """Return a valid bundle for ``record``, writing one if none exists.

        An existing valid bundle is reused without contacting the network.

        Raises:
            CertificateError: On corrupt existing material, issuance or write failure
        """
        bundle = self.bundle_for(record)
        inspection = inspect_bundle(bundle)

        if inspection.verdict is BundleVerdict.VALID:
            logger.info("Reusing existing certificate bundle in %s", self.certs_dir)
            return self._with_fingerprint(bundle)
        if inspection.verdict is BundleVerdict.CORRUPT:
            raise CertificateError(CertificateError.CORRUPT_BUNDLE, inspection.details)

        # Issuance leaves an active certificate in the cloud; everything that
        # can fail without side effects goes first.
        root_ca = self._obtain_root_ca(record)
        issued = self._obtain_material(record)
        self._write_bundle(bundle, issued, root_ca)

        bundle = self._with_fingerprint(bundle)
        logger.info("Wrote certificate bundle for %s (fingerprint %s...)", record.thing_name, bundle.fingerprint[:16])
        return bundle

    def _obtain_material(self, record: DeviceRecord) -> IssuedCertificate:
        if record.has_preissued_material:
            logger.info("Using pre-issued certificate from the device record")
            issued = IssuedCertificate(
                certificate_pem=record.certificate_pem,
                private_key_pem=record.private_key_pem,
            )
        elif record.certificate_pem or record.private_key_pem:
            raise CertificateError(
                CertificateError.ISSUANCE_FAILED,
                "device record holds only one of certificate and private key",
            )
        elif not self.config.enabled:
            raise CertificateError(
                CertificateError.ISSUANCE_FAILED,
                "no pre-issued material and certificate issuance is disabled",
            )
        else:
            issued = self.issuer.issue(record)

        if not is_certificate(issued.certificate_pem):
            raise CertificateError(CertificateError.ISSUANCE_FAILED, "device certificate is not an X.509 certificate")
        if not private_key_parses(issued.private_key_pem):
            raise CertificateError(CertificateError.ISSUANCE_FAILED, "private key is not a readable RSA or EC key")
        if not key_matches_certificate(issued.certificate_pem, issued.private_key_pem):
            raise CertificateError(CertificateError.ISSUANCE_FAILED, "device certificate does not match the private key")
        return issued

    def _obtain_root_ca(self, record: DeviceRecord) -> str:
        if not record.root_ca:
            return fetch_root_ca(self.config.root_ca_url, self.config.timeout_seconds, self.session)

        if PEM_CERTIFICATE_HEADER in record.root_ca:
            if not is_certificate(record.root_ca):
                raise CertificateError(
                    CertificateError.ISSUANCE_FAILED, "root CA in the device record is not an X.509 certificate"
                )
            return record.root_ca

        path = Path(record.root_ca)
        try:
            content = path.read_text()
        except OSError as e:
            raise CertificateError(CertificateError.ISSUANCE_FAILED, f"cannot read root CA {path}: {e}") from e
        if not is_certificate(content):
            raise CertificateError(CertificateError.ISSUANCE_FAILED, f"{path} holds no certificate")
        return content

    def _write_bundle(self, bundle: CertificateBundle, issued: IssuedCertificate, root_ca: str) -> None:
        # Key first; every file is renamed into place only once complete.
        plan = [
            (bundle.private_key_path, issued.private_key_pem, SECRET_MODE),
            (bundle.certificate_path, issued.certificate_pem, SHARED_MODE),
            (bundle.root_ca_path, root_ca, SHARED_MODE),
        ]
        written: list[Path] = []
        try:
            self.certs_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            for path, content, mode in plan:
                atomic_write(path, content.strip() + "\n", mode=mode)
                written.append(path)

            key_mode = file_mode(bundle.private_key_path)
            if key_mode & 0o077:
                raise InsecurePermissionsError(f"{bundle.private_key_path.name} has mode {key_mode:04o}")
        except InsecurePermissionsError as e:
            self._discard(written)
            raise CertificateError(CertificateError.PERMISSIONS_FAILED, str(e)) from e
        except OSError as e:
            self._discard(written)
            raise CertificateError(CertificateError.WRITE_FAILED, str(e)) from e

    @staticmethod
    def _discard(paths: list[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Could not remove partial bundle file %s: %s", path, e)

    @staticmethod
    def _with_fingerprint(bundle: CertificateBundle) -> CertificateBundle:
        try:
            fingerprint = certificate_fingerprint(bundle.certificate_path.read_text())
        except OSError as e:
            raise CertificateError(CertificateError.WRITE_FAILED, f"cannot read back certificate: {e}") from e
        return replace(bundle, fingerprint=fingerprint)
