"""Read-only access to the local device configuration database."""

import logging
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import DatabaseError
from .identity import identifier_variants

logger = logging.getLogger(__name__)

DEVICE_TABLE = "device_config"
IDENTIFIER_TABLE = "device_identifiers"

REQUIRED_COLUMNS = ("device_id", "thing_name", "iot_endpoint", "aws_region", "role_alias")
OPTIONAL_COLUMNS = (
    "role_alias_endpoint",
    "root_ca_path",
    "certificate_pem",
    "private_key_pem",
    "nucleus_version",
    "deployment_group",
    "initial_components",
    "proxy_url",
    "mqtt_port",
    "custom_domain",
    "created_at",
)

DEFAULT_NUCLEUS_VERSION = "2.9.0"

_THING_NAME = re.compile(r"^[A-Za-z0-9:_-]{1,128}$")
_HOST_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
_HOSTNAME = re.compile(rf"^(?=.{{1,253}}$){_HOST_LABEL}(?:\.{_HOST_LABEL})*$")


def parse_endpoint(value: str) -> tuple[str, Optional[int]]:
    """Split ``host[:port]`` into its parts.

    Raises:
        ValueError: If the value is not a valid host with an optional port
    """
    if ":" in value:
        host, _, port_text = value.rpartition(":")
        if not port_text.isdigit() or not 1 <= int(port_text) <= 65535:
            raise ValueError(f"Invalid endpoint port: {value!r}")
        port: Optional[int] = int(port_text)
    else:
        host, port = value, None

    if not _HOSTNAME.match(host):
        raise ValueError(f"Invalid endpoint host: {value!r}")
    return host, port


@dataclass(frozen=True)
class DeviceRecord:
    """One device's identity and cloud-connection parameters."""

    device_id: str
    thing_name: str
    iot_endpoint: str
    aws_region: str
    role_alias: str
    role_alias_endpoint: Optional[str] = None
    root_ca: Optional[str] = None
    certificate_pem: Optional[str] = None
    private_key_pem: Optional[str] = None
    nucleus_version: str = DEFAULT_NUCLEUS_VERSION
    deployment_group: Optional[str] = None
    initial_components: tuple[str, ...] = field(default_factory=tuple)
    proxy_url: Optional[str] = None
    mqtt_port: Optional[int] = None
    custom_domain: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.thing_name:
            raise ValueError("Thing name is empty")
        if not _THING_NAME.match(self.thing_name):
            raise ValueError(f"Invalid thing name: {self.thing_name!r}")
        if not self.iot_endpoint:
            raise ValueError("IoT endpoint is empty")
        parse_endpoint(self.iot_endpoint)
        if not self.aws_region.strip():
            raise ValueError("AWS region is empty")
        if not self.role_alias.strip():
            raise ValueError("Role alias is empty")
        if self.mqtt_port is not None and not 1 <= self.mqtt_port <= 65535:
            raise ValueError(f"Invalid MQTT port: {self.mqtt_port}")

    @property
    def has_preissued_material(self) -> bool:
        """Check if the record carries both a certificate and a private key."""
        return bool(self.certificate_pem) and bool(self.private_key_pem)


class DeviceConfigRepository:
    """Loads the device record from an SQLite database.

    The database belongs to an external provisioning pipeline; it is only
    ever opened read-only.

    Selection policy: a configured or detected device identifier is resolved
    through the ``device_identifiers`` table (MAC address or serial number)
    or matched directly against ``device_id``. Without a match the record
    with the lowest ``device_id`` is used.
    """

    def __init__(
        self,
        database_path: Path,
        device_identifier: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize repository.

        Args:
            database_path: SQLite database file
            device_identifier: MAC address, serial number or device ID
            timeout_seconds: Busy timeout for the read
        """
        self.database_path = Path(database_path)
        self.device_identifier = device_identifier
        self.timeout_seconds = timeout_seconds

    def load_device_record(self) -> DeviceRecord:
        """Load exactly one device record.

        Raises:
            DatabaseError: If the database or the record is missing or invalid
        """
        if not self.database_path.is_file():
            raise DatabaseError("database not found", str(self.database_path))

        try:
            with closing(self._connect()) as conn:
                conn.row_factory = sqlite3.Row
                columns = self._table_columns(conn, DEVICE_TABLE)
                if not columns:
                    raise DatabaseError("device table missing", f"no table {DEVICE_TABLE!r}")

                missing = [c for c in REQUIRED_COLUMNS if c not in columns]
                if missing:
                    raise DatabaseError("malformed device table", f"missing columns {', '.join(missing)}")

                row = self._select_row(conn, columns)
        except sqlite3.Error as e:
            raise DatabaseError("database unreadable", f"{self.database_path}: {e}") from e

        return self._to_record(row)

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.database_path.resolve().as_uri()}?mode=ro"
        return sqlite3.connect(uri, uri=True, timeout=self.timeout_seconds)

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
        return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}

    def _select_row(self, conn: sqlite3.Connection, columns: set[str]) -> sqlite3.Row:
        selected = ", ".join(c for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS if c in columns)

        if self.device_identifier:
            device_id = self._resolve_identifier(conn, self.device_identifier)
            if device_id is not None:
                row = conn.execute(
                    f"SELECT {selected} FROM {DEVICE_TABLE} WHERE device_id = ? LIMIT 1",
                    (device_id,),
                ).fetchone()
                if row is not None:
                    logger.info("Found configuration for device %s", device_id)
                    return row
            logger.warning("No device record for identifier %s, using default selection", self.device_identifier)

        count = conn.execute(f"SELECT COUNT(*) FROM {DEVICE_TABLE}").fetchone()[0]
        if count == 0:
            raise DatabaseError("no device to provision", f"table {DEVICE_TABLE!r} is empty")
        if count > 1:
            logger.warning("%d device records found, using the lowest device_id", count)

        return conn.execute(
            f"SELECT {selected} FROM {DEVICE_TABLE} ORDER BY device_id ASC LIMIT 1"
        ).fetchone()

    def _resolve_identifier(self, conn: sqlite3.Connection, identifier: str) -> Optional[str]:
        variants = identifier_variants(identifier)
        placeholders = ", ".join("?" for _ in variants)

        id_columns = self._table_columns(conn, IDENTIFIER_TABLE)
        lookups = [c for c in ("mac_address", "serial_number") if c in id_columns]
        if "device_id" in id_columns and lookups:
            where = " OR ".join(f"{c} IN ({placeholders})" for c in lookups)
            row = conn.execute(
                f"SELECT device_id FROM {IDENTIFIER_TABLE} WHERE {where} LIMIT 1",
                tuple(variants) * len(lookups),
            ).fetchone()
            if row is not None:
                logger.debug("Identifier %s maps to device %s", identifier, row["device_id"])
                return row["device_id"]

        row = conn.execute(
            f"SELECT device_id FROM {DEVICE_TABLE} WHERE device_id IN ({placeholders}) LIMIT 1",
            tuple(variants),
        ).fetchone()
        return row["device_id"] if row is not None else None

    @staticmethod
    def _to_record(row: sqlite3.Row) -> DeviceRecord:
        data = {key: row[key] for key in row.keys()}

        def text(key: str) -> Optional[str]:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        components = text("initial_components")
        mqtt_port = data.get("mqtt_port")

        try:
            return DeviceRecord(
                device_id=text("device_id") or "",
                thing_name=text("thing_name") or "",
                iot_endpoint=text("iot_endpoint") or "",
                aws_region=text("aws_region") or "",
                role_alias=text("role_alias") or "",
                role_alias_endpoint=text("role_alias_endpoint"),
                root_ca=text("root_ca_path"),
                certificate_pem=text("certificate_pem"),
                private_key_pem=text("private_key_pem"),
                nucleus_version=text("nucleus_version") or DEFAULT_NUCLEUS_VERSION,
                deployment_group=text("deployment_group"),
                initial_components=tuple(
                    c.strip() for c in components.split(",") if c.strip()
                ) if components else (),
                proxy_url=text("proxy_url"),
                mqtt_port=int(mqtt_port) if mqtt_port not in (None, "") else None,
                custom_domain=text("custom_domain"),
                created_at=text("created_at"),
            )
        except (TypeError, ValueError) as e:
            raise DatabaseError("malformed device record", str(e)) from e
