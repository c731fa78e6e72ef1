"""Host identity detection used to select the device record."""

import logging
import socket
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SYSFS_NET = Path("/sys/class/net")
PRIMARY_INTERFACES = ("eth0", "end0", "enp0s3", "wlan0")


def read_mac_address(interface: str, sysfs: Path = SYSFS_NET) -> Optional[str]:
    """Read an interface MAC address, colon-separated and lower-case."""
    try:
        value = (sysfs / interface / "address").read_text().strip().lower()
    except OSError:
        return None
    if not value or value == "00:00:00:00:00:00":
        return None
    return value


def detect_device_identifier(sysfs: Path = SYSFS_NET) -> str:
    """Identify this host.

    Tries the MAC address of the primary network interface, then the
    hostname, then ``"default"``.
    """
    for interface in PRIMARY_INTERFACES:
        mac = read_mac_address(interface, sysfs)
        if mac:
            logger.debug("Using MAC address of %s as device identifier", interface)
            return mac

    hostname = socket.gethostname()
    if hostname:
        logger.debug("Using hostname as device identifier")
        return hostname

    return "default"


def identifier_variants(identifier: str) -> list[str]:
    """Spellings of ``identifier`` a device table might store.

    MAC addresses are stored either colon-separated or bare.
    """
    variants = [identifier]
    bare = identifier.replace(":", "")
    if bare != identifier:
        variants.append(bare)
    return variants
