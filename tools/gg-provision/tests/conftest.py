"""Pytest configuration and fixtures for gg-provision tests."""

import base64
import datetime
import sqlite3
import tempfile
import textwrap
from contextlib import closing
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest
from Crypto.PublicKey import ECC, RSA
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from gg_provision.database import DeviceRecord

DEVICE_CONFIG_SCHEMA = """
CREATE TABLE device_config (
    device_id TEXT PRIMARY KEY,
    thing_name TEXT NOT NULL,
    iot_endpoint TEXT NOT NULL,
    aws_region TEXT NOT NULL,
    root_ca_path TEXT,
    certificate_pem TEXT,
    private_key_pem TEXT,
    role_alias TEXT NOT NULL,
    role_alias_endpoint TEXT,
    nucleus_version TEXT,
    deployment_group TEXT,
    initial_components TEXT,
    proxy_url TEXT,
    mqtt_port INTEGER,
    custom_domain TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE device_identifiers (
    device_id TEXT PRIMARY KEY,
    mac_address TEXT,
    serial_number TEXT
);
"""


def make_pem(label: str, seed: bytes) -> str:
    """Build a syntactically valid PEM block around deterministic bytes."""
    body = base64.b64encode(seed * 8).decode()
    lines = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN {label}-----\n{lines}\n-----END {label}-----\n"


def self_signed_certificate(key_pem: str, common_name: str, ca: bool = False) -> str:
    """Build a self-signed X.509 certificate for ``key_pem``."""
    key = serialization.load_pem_private_key(key_pem.encode(), password=None)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="session")
def rsa_key_pem() -> str:
    """RSA private key in PEM form."""
    return RSA.generate(2048).export_key().decode()


@pytest.fixture(scope="session")
def ec_key_pem() -> str:
    """EC P-256 private key in PEM form, unrelated to the device key."""
    return ECC.generate(curve="P-256").export_key(format="PEM")


@pytest.fixture(scope="session")
def certificate_pem(rsa_key_pem: str) -> str:
    """Device certificate PEM for ``rsa_key_pem``."""
    return self_signed_certificate(rsa_key_pem, "edge-01")


@pytest.fixture(scope="session")
def root_ca_pem(ec_key_pem: str) -> str:
    """Root CA certificate PEM."""
    return self_signed_certificate(ec_key_pem, "gg-provision test root CA", ca=True)


@pytest.fixture
def junk_certificate_pem() -> str:
    """CERTIFICATE armour around bytes that are not DER."""
    return make_pem("CERTIFICATE", b"not a certificate at all")


@pytest.fixture
def device_row(certificate_pem: str, rsa_key_pem: str, root_ca_pem: str) -> dict:
    """Database row for device edge-01 with pre-issued material."""
    return {
        "device_id": "device-001",
        "thing_name": "edge-01",
        "iot_endpoint": "iot.example:8443",
        "aws_region": "us-east-1",
        "root_ca_path": root_ca_pem,
        "certificate_pem": certificate_pem,
        "private_key_pem": rsa_key_pem,
        "role_alias": "GreengrassV2TokenExchangeRoleAlias",
        "role_alias_endpoint": "cred.iot.us-east-1.amazonaws.com",
        "nucleus_version": "2.12.0",
        "deployment_group": "production",
        "initial_components": "aws.greengrass.Cli, aws.greengrass.LocalDebugConsole",
        "mqtt_port": 8883,
    }


@pytest.fixture
def make_database(temp_dir: Path) -> Callable[..., Path]:
    """Factory writing a device database with the given rows."""

    def _make(
        rows: list[dict],
        identifiers: Optional[list[dict]] = None,
        name: str = "devices.db",
        schema: str = DEVICE_CONFIG_SCHEMA,
    ) -> Path:
        path = temp_dir / name
        with closing(sqlite3.connect(path)) as conn:
            conn.executescript(schema)
            for row in rows:
                columns = ", ".join(row)
                placeholders = ", ".join("?" for _ in row)
                conn.execute(
                    f"INSERT INTO device_config ({columns}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
            for ident in identifiers or []:
                conn.execute(
                    "INSERT INTO device_identifiers (device_id, mac_address, serial_number) VALUES (?, ?, ?)",
                    (ident["device_id"], ident.get("mac_address"), ident.get("serial_number")),
                )
            conn.commit()
        return path

    return _make


@pytest.fixture
def sample_database(make_database: Callable[..., Path], device_row: dict) -> Path:
    """Database holding the single edge-01 device."""
    return make_database([device_row])


@pytest.fixture
def device_record(certificate_pem: str, rsa_key_pem: str, root_ca_pem: str) -> DeviceRecord:
    """Device record for edge-01."""
    return DeviceRecord(
        device_id="device-001",
        thing_name="edge-01",
        iot_endpoint="iot.example:8443",
        aws_region="us-east-1",
        role_alias="GreengrassV2TokenExchangeRoleAlias",
        role_alias_endpoint="cred.iot.us-east-1.amazonaws.com",
        root_ca=root_ca_pem,
        certificate_pem=certificate_pem,
        private_key_pem=rsa_key_pem,
    )
