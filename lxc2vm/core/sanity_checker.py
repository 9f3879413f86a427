from __future__ import annotations
import argparse
import logging
from typing import List

from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from .exceptions import NotFoundError
from .utils import U

REQUIRED_TOOLS = [
    "pct",
    "qm",
    "pvesm",
    "parted",
    "kpartx",
    "losetup",
    "rsync",
    "mkfs.ext4",
    "blkid",
    "chroot",
]
UEFI_TOOLS = ["mkfs.fat"]
SHRINK_TOOLS = ["e2fsck", "resize2fs", "dumpe2fs", "qemu-img"]
OPTIONAL_TOOLS = ["qemu-nbd", "grub-install"]


class SanityChecker:
    def __init__(self, logger: logging.Logger, args: argparse.Namespace):
        self.logger = logger
        self.args = args

    def required_tools(self) -> List[str]:
        tools = list(REQUIRED_TOOLS)
        if getattr(self.args, "bios", "seabios") == "ovmf":
            tools += UEFI_TOOLS
        if getattr(self.args, "shrink", False):
            tools += SHRINK_TOOLS
        if getattr(self.args, "export", None):
            tools.append("qemu-img")
        return tools

    def check_root(self) -> None:
        if getattr(self.args, "dry_run", False):
            self.logger.debug("DRY-RUN: skipping root check")
            return
        U.require_root(self.logger)

    def check_tools(self) -> None:
        missing = [t for t in self.required_tools() if U.which(t) is None]
        missing_optional = [t for t in OPTIONAL_TOOLS if U.which(t) is None]
        if missing:
            raise NotFoundError(
                f"Missing required tools: {', '.join(sorted(set(missing)))}",
                hint="Run on a Proxmox VE host with parted, kpartx, rsync and dosfstools installed.",
            )
        if missing_optional:
            self.logger.warning(f"Missing optional tools: {', '.join(missing_optional)}")
        self.logger.debug("Tools sanity check passed.")

    def check_all(self) -> None:
        checks = [self.check_root, self.check_tools]
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"), TimeElapsedColumn(), TimeRemainingColumn()) as progress:
            task = progress.add_task("Running sanity checks", total=len(checks))
            for check in checks:
                check()
                progress.update(task, advance=1)
        self.logger.info("All sanity checks passed.")
