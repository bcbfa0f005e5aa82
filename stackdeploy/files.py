"""
File helpers shared by every component that writes to the host.

All managed files are written through atomic_write so a crashed or
concurrent reader never observes a half-written file.
"""

import contextlib
import fcntl
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import DeploymentLocked

logger = logging.getLogger(__name__)

Pathy = Union[str, Path]


def atomic_write(
    path: Pathy,
    contents: Union[str, bytes],
    mode: int = 0o600,
    owner: Optional[int] = None,
    group: Optional[int] = None,
) -> None:
    """Write contents to a temporary file next to path and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = contents.encode("utf-8") if isinstance(contents, str) else contents

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        if owner is not None or group is not None:
            os.chown(
                tmp_name,
                owner if owner is not None else -1,
                group if group is not None else -1,
            )
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    logger.debug(f"Written: {path} (mode {oct(mode)})")


def file_mode(path: Pathy) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


@contextlib.contextmanager
def exclusive_lock(path: Pathy) -> Iterator[None]:
    """Hold a non-blocking advisory lock on path for the duration of the block."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise DeploymentLocked(
                f"Another deployment is already running (lock held on {path})"
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
