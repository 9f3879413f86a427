# lxc2vm/converters/shrinker.py
"""
Shrinks a stopped container's root volume in place before conversion.

Each storage backend gets its own sequence, but all of them follow the same
order: check the filesystem, shrink the filesystem, then shrink the volume
under it. A failed resize2fs therefore never leaves a truncated volume behind.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable, Optional

from ..core.exceptions import ConfigError, ConversionError
from ..core.guards import loop_device
from ..core.sizing import ShrinkPlan, SizingEngine
from ..core.utils import GiB, U
from ..proxmox.parsers import (
    ContainerConfig,
    RootfsSpec,
    parse_block_size,
    parse_qemu_img_format,
    parse_resize2fs_min_blocks,
)
from ..proxmox.pct import ContainerClient
from ..proxmox.pvesm import StorageClient
from .migrator import measure_used

LVM_TYPES = ("lvm", "lvmthin")
FILE_TYPES = ("dir", "nfs", "cifs", "glusterfs")
ZFS_TYPES = ("zfspool",)
SUPPORTED_TYPES = LVM_TYPES + FILE_TYPES + ZFS_TYPES


def fsck(logger: logging.Logger, device: str) -> None:
    """e2fsck -f -y, retried once. Exit codes below 4 mean clean or corrected."""
    for attempt in (1, 2):
        res = U.run_cmd(logger, ["e2fsck", "-f", "-y", device], capture=True, check=False)
        if res.returncode < 4:
            return
        if attempt == 1:
            logger.warning("e2fsck reported issues. Trying once more...")
    raise ConversionError(
        f"Filesystem check failed on {device}. Aborting shrink.",
        hint=f"Inspect manually: e2fsck -f {device}",
        exit=res.returncode,
    )


def filesystem_minimum_gb(logger: logging.Logger, device: str) -> Optional[int]:
    """resize2fs -P blocks x block size, as whole GiB plus one."""
    blocks = parse_resize2fs_min_blocks(
        U.to_text(U.run_cmd(logger, ["resize2fs", "-P", device], capture=True, check=False).stdout)
    )
    bsize = parse_block_size(
        U.to_text(U.run_cmd(logger, ["dumpe2fs", "-h", device], capture=True, check=False).stdout)
    )
    if blocks is None or bsize is None:
        logger.debug(f"Could not read filesystem minimum for {device}")
        return None
    return (blocks * bsize) // GiB + 1


class ContainerShrinker:
    def __init__(
        self,
        logger: logging.Logger,
        pct: ContainerClient,
        pvesm: StorageClient,
        engine: Optional[SizingEngine] = None,
    ):
        self.logger = logger
        self.pct = pct
        self.pvesm = pvesm
        self.engine = engine or SizingEngine(logger)

    def storage_type(self, rootfs: RootfsSpec) -> str:
        stype = self.pvesm.storage_type(rootfs.storage)
        if stype not in SUPPORTED_TYPES:
            raise ConfigError(
                f"Unsupported storage type: '{stype}'. Supported: {', '.join(SUPPORTED_TYPES)}.",
                storage=rootfs.storage,
            )
        return stype

    def measure(self, ctid: int) -> int:
        root = self.pct.mount(ctid)
        try:
            return measure_used(self.logger, root)
        finally:
            self.pct.unmount(ctid)

    def plan(self, ctid: int, ct: ContainerConfig, headroom_gb: int, *, used_bytes: Optional[int] = None) -> ShrinkPlan:
        rootfs = self._rootfs(ctid, ct)
        self.storage_type(rootfs)
        used = used_bytes if used_bytes is not None else self.measure(ctid)
        return self.engine.plan(used, headroom_gb, current_gb=rootfs.size_gb)

    def shrink(self, ctid: int, ct: ContainerConfig, headroom_gb: int) -> ShrinkPlan:
        """Plan and apply. The container must be stopped."""
        rootfs = self._rootfs(ctid, ct)
        stype = self.storage_type(rootfs)
        U.banner(self.logger, f"Shrink CT {ctid} root disk ({rootfs.storage}, {stype})")
        plan = self.engine.plan(self.measure(ctid), headroom_gb, current_gb=rootfs.size_gb)
        if plan.skipped:
            self.engine.execute(plan, lambda _size: None)
            return plan
        self.logger.info(f"Potential savings: {plan.current_gb - plan.target_gb}GB")
        path = self.pvesm.path(rootfs.volume)
        if stype in LVM_TYPES:
            self._shrink_lvm(plan, path)
        elif stype in ZFS_TYPES:
            self._shrink_zfs(plan, path)
        else:
            self._shrink_image(plan, Path(path), ctid)
        if not plan.skipped and plan.final_gb is not None:
            self.logger.info("Updating container config...")
            self.pct.set_rootfs_size(ctid, rootfs.volume, plan.final_gb)
            self.logger.info(f"Shrink complete: {plan.current_gb}GB -> {plan.final_gb}GB (saved {plan.savings_gb}GB)")
        return plan

    def _rootfs(self, ctid: int, ct: ContainerConfig) -> RootfsSpec:
        if ct.rootfs is None:
            raise ConfigError(f"Container {ctid} has no rootfs entry")
        if not ct.rootfs.size_gb:
            raise ConfigError(f"Could not determine the rootfs size of container {ctid}")
        return ct.rootfs

    def _run_shrink(self, plan: ShrinkPlan, device: str, resize_volume: Callable[[int], None]) -> int:
        fsck(self.logger, device)
        self.engine.raise_to_minimum(plan, filesystem_minimum_gb(self.logger, device))

        def resize(size_gb: int) -> None:
            U.run_cmd(self.logger, ["resize2fs", device, f"{size_gb}G"], capture=True)
            resize_volume(size_gb)

        final = self.engine.execute(plan, resize)
        if not plan.skipped:
            res = U.run_cmd(self.logger, ["e2fsck", "-f", "-y", device], capture=True, check=False)
            if res.returncode >= 4:
                self.logger.warning("Post-shrink fsck had warnings (usually harmless).")
        return final

    def _shrink_lvm(self, plan: ShrinkPlan, lv_path: str) -> None:
        U.run_cmd(self.logger, ["lvchange", "-ay", lv_path], capture=True, check=False)

        def lvresize(size_gb: int) -> None:
            U.run_cmd(self.logger, ["lvresize", "-y", "-L", f"{size_gb}G", lv_path], capture=True)

        self._run_shrink(plan, lv_path, lvresize)

    def _shrink_zfs(self, plan: ShrinkPlan, zvol: str) -> None:
        dataset = zvol.replace("/dev/zvol/", "", 1)
        if not dataset:
            raise ConversionError(f"Could not determine ZFS dataset for {zvol}")
        self.logger.info(f"ZFS dataset: {dataset}")

        def volsize(size_gb: int) -> None:
            U.run_cmd(self.logger, ["zfs", "set", f"volsize={size_gb}G", dataset], capture=True)

        self._run_shrink(plan, zvol, volsize)

    def _shrink_image(self, plan: ShrinkPlan, path: Path, ctid: int) -> None:
        info = U.run_cmd(self.logger, ["qemu-img", "info", "--output=json", str(path)], capture=True)
        fmt = parse_qemu_img_format(info.stdout)
        self.logger.info(f"Disk image: {path} ({fmt})")
        if fmt == "raw":
            self._shrink_raw(plan, path, ctid)
            return
        if fmt != "qcow2":
            raise ConfigError(f"Unsupported image format for shrink: {fmt}")
        tmp = path.with_name(path.name + ".shrink.raw")
        try:
            self.logger.info("Converting qcow2 to raw for shrinking...")
            U.run_cmd(self.logger, ["qemu-img", "convert", "-f", "qcow2", "-O", "raw", str(path), str(tmp)], capture=True)
            self._shrink_raw(plan, tmp, ctid)
            if not plan.skipped:
                self.logger.info("Converting back to qcow2...")
                U.run_cmd(self.logger, ["qemu-img", "convert", "-f", "raw", "-O", "qcow2", str(tmp), str(path)], capture=True)
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"qcow2 shrink failed for {path}", cause=e)
        finally:
            U.safe_unlink(tmp)

    def _shrink_raw(self, plan: ShrinkPlan, image: Path, ctid: int) -> None:
        with loop_device(self.logger, image, owner=f"shrink-ct{ctid}") as dev:
            self._run_shrink(plan, dev, lambda _size: None)
        if not plan.skipped and plan.final_gb is not None:
            U.run_cmd(self.logger, ["truncate", "-s", f"{plan.final_gb}G", str(image)], capture=True)
            self.logger.info("Raw image truncated.")
