"""Atomic file replacement used for status, certificates and config."""

import os
import stat
import tempfile
from pathlib import Path
from typing import Union

# Owner read/write only.
SECRET_MODE = 0o600
# Owner read/write, group read.
SHARED_MODE = 0o640
# Readable by any local monitor.
PUBLIC_MODE = 0o644


class InsecurePermissionsError(OSError):
    """A secret file would carry group or other permission bits."""


def atomic_write(path: Path, data: Union[str, bytes], mode: int = SHARED_MODE) -> None:
    """Write ``data`` to ``path`` so readers only ever see a complete file.

    The content goes to a temporary file in the same directory, which is
    flushed and fsynced before an ``os.replace`` over the target.
    ``tempfile.mkstemp`` creates the temporary file with mode 0600, so the
    file never exists with wider permissions than ``mode``; for secret
    material the mode is left as created and verified.

    Args:
        path: Target file
        data: Text or bytes to write
        mode: Final permission bits

    Raises:
        OSError: On any filesystem failure (the temporary file is removed)
        InsecurePermissionsError: If a secret file would carry group/other bits
    """
    path = Path(path)
    payload = data.encode() if isinstance(data, str) else data

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            if mode != SECRET_MODE:
                os.fchmod(f.fileno(), mode)
            else:
                actual = stat.S_IMODE(os.fstat(f.fileno()).st_mode)
                if actual & 0o077:
                    raise InsecurePermissionsError(
                        f"Temporary file for {path.name} created with mode {actual:o}"
                    )
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def file_mode(path: Path) -> int:
    """Permission bits of ``path``."""
    return stat.S_IMODE(os.stat(path).st_mode)
