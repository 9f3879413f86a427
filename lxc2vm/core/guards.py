# lxc2vm/core/guards.py
# ---------------------------------------------------------------------
# Scoped host-resource guards.
#
# Every loop device, partition mapping, mount and bind mount is acquired
# through a context manager whose release runs on success, on error and on
# cancellation. The orchestrator stacks them in a contextlib.ExitStack so a
# failed job unwinds in reverse acquisition order.
#
# A small in-process ledger records what each owner (job key) holds, which is
# what cleanup verification and the tests inspect.
# ---------------------------------------------------------------------
from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .exceptions import ConversionError
from .utils import U

CHROOT_BINDS = ("dev", "dev/pts", "proc", "sys")

_ledger_lock = threading.Lock()
_ledger: Dict[str, List[Tuple[str, str]]] = {}


def _hold(owner: str, kind: str, ident: str) -> None:
    with _ledger_lock:
        _ledger.setdefault(owner, []).append((kind, ident))


def _drop(owner: str, kind: str, ident: str) -> None:
    with _ledger_lock:
        held = _ledger.get(owner, [])
        if (kind, ident) in held:
            held.remove((kind, ident))
        if not held:
            _ledger.pop(owner, None)


def held_by(owner: str) -> List[Tuple[str, str]]:
    """Resources still attached on behalf of owner (empty after a clean unwind)."""
    with _ledger_lock:
        return list(_ledger.get(owner, []))


@contextlib.contextmanager
def loop_device(logger: logging.Logger, image: Path, *, owner: str) -> Iterator[str]:
    try:
        out = U.run_cmd(logger, ["losetup", "--show", "-f", str(image)], capture=True)
    except subprocess.CalledProcessError as e:
        raise ConversionError(f"losetup failed for {image}", cause=e, hint="Check free loop devices: losetup -a")
    dev = out.stdout.strip()
    if not dev.startswith("/dev/"):
        raise ConversionError(f"losetup returned an unexpected device: {dev!r}")
    _hold(owner, "loop", dev)
    logger.debug(f"Attached {image} -> {dev}")
    try:
        yield dev
    finally:
        ok = U.retry(
            logger,
            f"losetup -d {dev}",
            lambda: U.run_cmd(logger, ["losetup", "-d", dev], capture=True),
        )
        if ok:
            _drop(owner, "loop", dev)
        else:
            logger.error(f"Loop device {dev} is still attached; detach it manually: losetup -d {dev}")


def mapper_partition(loop_dev: str, index: int) -> str:
    return f"/dev/mapper/{Path(loop_dev).name}p{index}"


def wait_for_block_devices(paths: List[str], *, timeout_s: float = 5.0, interval_s: float = 0.5) -> None:
    deadline = time.monotonic() + timeout_s
    while True:
        missing = [p for p in paths if not Path(p).is_block_device()]
        if not missing:
            return
        if time.monotonic() >= deadline:
            raise ConversionError(f"Partition device(s) did not appear: {', '.join(missing)}")
        time.sleep(interval_s)


@contextlib.contextmanager
def partition_map(logger: logging.Logger, loop_dev: str, *, owner: str) -> Iterator[str]:
    """kpartx mappings for every partition on loop_dev."""
    try:
        U.run_cmd(logger, ["kpartx", "-a", loop_dev], capture=True)
    except subprocess.CalledProcessError as e:
        raise ConversionError(f"kpartx failed for {loop_dev}", cause=e)
    _hold(owner, "kpartx", loop_dev)
    try:
        yield loop_dev
    finally:
        ok = U.retry(
            logger,
            f"kpartx -d {loop_dev}",
            lambda: U.run_cmd(logger, ["kpartx", "-d", loop_dev], capture=True),
        )
        if ok:
            _drop(owner, "kpartx", loop_dev)
        else:
            logger.error(f"Partition mappings for {loop_dev} remain; remove them with: kpartx -d {loop_dev}")


@contextlib.contextmanager
def nbd_device(logger: logging.Logger, image: Path, fmt: str, *, owner: str, device: str = "/dev/nbd0") -> Iterator[str]:
    """qemu-nbd export for qcow2/vmdk images that kpartx cannot read."""
    try:
        U.run_cmd(logger, ["modprobe", "nbd", "max_part=16"], capture=True, check=False)
        U.run_cmd(logger, ["qemu-nbd", f"--format={fmt}", "--connect", device, str(image)], capture=True)
    except subprocess.CalledProcessError as e:
        raise ConversionError(f"qemu-nbd could not export {image}", cause=e)
    _hold(owner, "nbd", device)
    try:
        yield device
    finally:
        ok = U.retry(
            logger,
            f"qemu-nbd --disconnect {device}",
            lambda: U.run_cmd(logger, ["qemu-nbd", "--disconnect", device], capture=True),
        )
        if ok:
            _drop(owner, "nbd", device)


def _umount(logger: logging.Logger, target: Path) -> None:
    res = U.run_cmd(logger, ["umount", str(target)], capture=True, check=False)
    if res.returncode != 0:
        # busy targets (package manager daemons in a chroot) get a lazy detach
        U.run_cmd(logger, ["umount", "-lf", str(target)], capture=True)


@contextlib.contextmanager
def mounted(
    logger: logging.Logger,
    source: str,
    target: Path,
    *,
    owner: str,
    options: Optional[List[str]] = None,
) -> Iterator[Path]:
    U.ensure_dir(target)
    cmd = ["mount"] + (options or []) + [source, str(target)]
    try:
        U.run_cmd(logger, cmd, capture=True)
    except subprocess.CalledProcessError as e:
        raise ConversionError(f"mount {source} on {target} failed", cause=e)
    _hold(owner, "mount", str(target))
    try:
        yield target
    finally:
        try:
            U.run_cmd(logger, ["sync"], capture=True, check=False)
            _umount(logger, target)
            _drop(owner, "mount", str(target))
        except subprocess.CalledProcessError:
            logger.error(f"{target} is still mounted; unmount it manually: umount -lf {target}")


@contextlib.contextmanager
def bind_mounts(logger: logging.Logger, root: Path, *, owner: str) -> Iterator[Path]:
    """/dev, /dev/pts, /proc and /sys bound into root for a chroot session."""
    with contextlib.ExitStack() as stack:
        for rel in CHROOT_BINDS:
            stack.enter_context(mounted(logger, f"/{rel}", root / rel, owner=owner, options=["--bind"]))
        yield root
