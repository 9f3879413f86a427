from __future__ import annotations
import contextlib
import fcntl
import logging
import os
from pathlib import Path
from typing import Iterator, List

from .exceptions import ConfigError
from .utils import U

DEFAULT_LOCK_DIR = Path("/run/lock/lxc2vm")


@contextlib.contextmanager
def id_locks(logger: logging.Logger, ctid: int, vmid: int, lock_dir: Path = DEFAULT_LOCK_DIR) -> Iterator[None]:
    """
    Exclusive per-ID locks so two jobs never hold loop devices, mounts or chroot
    binds for the same container or VM at once. flock() is per open file
    description, so this holds between threads of one process as well as
    between processes.
    """
    U.ensure_dir(lock_dir)
    fds: List[int] = []
    try:
        for name in (f"ct{ctid}.lock", f"vm{vmid}.lock"):
            path = lock_dir / name
            fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise ConfigError(
                    f"Another conversion already holds {name[:-5]}",
                    hint="Wait for the running job to finish or pick different IDs.",
                    lock=str(path),
                )
            fds.append(fd)
            logger.debug(f"Acquired lock {path}")
        yield
    finally:
        for fd in reversed(fds):
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
