# lxc2vm/fixers/remediator.py
"""
One-shot offline repair for a converted guest that booted with a read-only
root (or a failed systemd-remount-fs).

The VM is stopped, its disk mapped on the host, the root filesystem fixed up
(kernel `rw`, cache directory permissions, apt partial dirs), grub.cfg
regenerated, the filesystem checked, and the VM started again. Live checks
then run exactly once more; there is no second attempt.
"""
from __future__ import annotations

import contextlib
import logging
import os
import re
import time
from pathlib import Path
from typing import Iterator, List

from ..core.exceptions import ConversionError, UnparseableOutput
from ..core.guards import bind_mounts, loop_device, mapper_partition, mounted, nbd_device, partition_map, wait_for_block_devices
from ..core.utils import U
from ..proxmox.parsers import parse_qemu_img_format
from ..proxmox.pvesm import StorageClient
from ..proxmox.qm import VMClient
from ..testers.health_validator import HealthReport, HealthValidator
from .boot_injector import CHROOT_PATH
from .distro import detect_distro, strategy_for

STICKY_DIRS = ("tmp", "var/tmp")
APT_PARTIAL_DIRS = ("var/cache/apt/archives/partial", "var/lib/apt/lists/partial")
_CMDLINE_RE = re.compile(r'^(GRUB_CMDLINE_LINUX_DEFAULT=)(["\']?)(.*?)\2\s*$')


def force_rw_cmdline(grub_default: str) -> str:
    """Strip `ro` from GRUB_CMDLINE_LINUX_DEFAULT and add `rw` (line added when missing)."""
    lines = grub_default.splitlines()
    for i, ln in enumerate(lines):
        m = _CMDLINE_RE.match(ln.strip())
        if not m:
            continue
        args = [a for a in m.group(3).split() if a != "ro"]
        if "rw" not in args:
            args.append("rw")
        lines[i] = f'GRUB_CMDLINE_LINUX_DEFAULT="{" ".join(args)}"'
        break
    else:
        lines.append('GRUB_CMDLINE_LINUX_DEFAULT="rw"')
    return "\n".join(lines) + "\n"


def normalize_cache_dirs(root: Path) -> List[str]:
    fixed = []
    for rel in STICKY_DIRS:
        p = root / rel
        p.mkdir(parents=True, exist_ok=True)
        if (p.stat().st_mode & 0o7777) != 0o1777:
            os.chmod(p, 0o1777)
            fixed.append(f"/{rel} 1777")
    for rel in APT_PARTIAL_DIRS:
        p = root / rel
        if p.parent.is_dir() and not p.is_dir():
            p.mkdir(mode=0o700)
            fixed.append(f"/{rel} recreated")
    return fixed


class Remediator:
    def __init__(
        self,
        logger: logging.Logger,
        qm: VMClient,
        pvesm: StorageClient,
        validator: HealthValidator,
    ):
        self.logger = logger
        self.qm = qm
        self.pvesm = pvesm
        self.validator = validator

    def _disk_format(self, path: str) -> str:
        if path.startswith("/dev/"):
            return "raw"
        info = U.run_cmd(self.logger, ["qemu-img", "info", "--output=json", path], capture=True, check=False)
        try:
            return parse_qemu_img_format(info.stdout or "")
        except UnparseableOutput:
            return Path(path).suffix.lstrip(".") or "raw"

    @contextlib.contextmanager
    def _root_partition(self, disk_path: str, fmt: str, uefi: bool, owner: str) -> Iterator[str]:
        index = 2 if uefi else 1
        with contextlib.ExitStack() as stack:
            if fmt in ("qcow2", "vmdk"):
                dev = stack.enter_context(nbd_device(self.logger, Path(disk_path), fmt, owner=owner))
                part = f"{dev}p{index}"
            else:
                dev = stack.enter_context(loop_device(self.logger, Path(disk_path), owner=owner))
                stack.enter_context(partition_map(self.logger, dev, owner=owner))
                part = mapper_partition(dev, index)
            wait_for_block_devices([part])
            yield part

    def remediate(self, vmid: int, report: HealthReport, *, uefi: bool, owner: str, work_dir: Path) -> HealthReport:
        U.banner(self.logger, f"Remediate VM {vmid}")
        self.logger.warning(f"Attempting remediation: {report.degraded_summary()}")
        self.qm.stop(vmid)
        time.sleep(2)
        volume = self.qm.config(vmid).get("scsi0", "").split(",", 1)[0]
        if not volume:
            raise ConversionError(f"VM {vmid} has no scsi0 disk to repair")
        disk_path = self.pvesm.path(volume)
        fmt = self._disk_format(disk_path)
        mnt = Path(work_dir) / f"remediate-{vmid}"
        with self._root_partition(disk_path, fmt, uefi, owner) as part:
            with mounted(self.logger, part, mnt, owner=owner) as root:
                self._repair(root, owner, uefi)
            res = U.run_cmd(self.logger, ["e2fsck", "-f", "-y", part], capture=True, check=False)
            if res.returncode >= 4:
                self.logger.warning(f"e2fsck reported uncorrected errors on {part} (exit {res.returncode})")
        with contextlib.suppress(OSError):
            mnt.rmdir()
        self.validator.start(vmid, report)
        after = HealthReport(checks=report.checks, remediated=True)
        self.validator.live_check(vmid, after)
        if not after.agent_ok:
            self.logger.error("Guest agent did not answer after remediation; the repair is unconfirmed.")
        elif after.needs_remediation:
            self.logger.error(f"Remediation did not resolve the issue: {after.degraded_summary()}")
        else:
            self.logger.info("Remediation succeeded.")
        return after

    def _repair(self, root: Path, owner: str, uefi: bool) -> None:
        grub_default = root / "etc" / "default" / "grub"
        if grub_default.exists():
            text = grub_default.read_text(encoding="utf-8", errors="replace")
            grub_default.write_text(force_rw_cmdline(text), encoding="utf-8")
            self.logger.info("GRUB_CMDLINE_LINUX_DEFAULT: added rw, removed ro")
        for fix in normalize_cache_dirs(root):
            self.logger.info(f"Fixed {fix}")
        strategy = strategy_for(detect_distro(root).family)
        env = dict(os.environ, PATH=CHROOT_PATH, **strategy.env)
        with bind_mounts(self.logger, root, owner=owner):
            for argv in strategy.grub_config_step(uefi).alternatives:
                res = U.run_cmd(self.logger, ["chroot", str(root)] + argv, capture=True, check=False, env=env)
                if res.returncode == 0:
                    break
            else:
                self.logger.warning("Could not regenerate grub.cfg during remediation")
