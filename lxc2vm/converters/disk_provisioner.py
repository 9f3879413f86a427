# lxc2vm/converters/disk_provisioner.py
from __future__ import annotations

import contextlib
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..core.exceptions import ConversionError
from ..core.guards import loop_device, mapper_partition, mounted, partition_map, wait_for_block_devices
from ..core.utils import U

IMAGE_NAME = "disk.raw"
ESP_END = "513MiB"


@dataclass
class DiskImage:
    path: Path
    format: str
    firmware: str
    partition_table: str
    loop_device: str
    root_partition: str
    mount_point: Path
    root_uuid: str
    efi_partition: Optional[str] = None
    efi_uuid: Optional[str] = None
    _stack: contextlib.ExitStack = field(default_factory=contextlib.ExitStack, repr=False)

    @property
    def uefi(self) -> bool:
        return self.firmware == "ovmf"

    @property
    def esp_mount(self) -> Path:
        return self.mount_point / "boot" / "efi"

    def close(self) -> None:
        """Unmount and detach everything; safe to call more than once."""
        self._stack.close()


def partition_commands(image: Path, firmware: str) -> List[List[str]]:
    img = str(image)
    if firmware == "ovmf":
        return [
            ["parted", "-s", img, "mklabel", "gpt"],
            ["parted", "-s", img, "mkpart", "ESP", "fat32", "1MiB", ESP_END],
            ["parted", "-s", img, "set", "1", "esp", "on"],
            ["parted", "-s", img, "mkpart", "primary", "ext4", ESP_END, "100%"],
        ]
    return [
        ["parted", "-s", img, "mklabel", "msdos"],
        ["parted", "-s", img, "mkpart", "primary", "ext4", "1MiB", "100%"],
        ["parted", "-s", img, "set", "1", "boot", "on"],
    ]


def blkid_uuid(logger: logging.Logger, device: str) -> str:
    res = U.run_cmd(logger, ["blkid", "-s", "UUID", "-o", "value", device], capture=True, check=False)
    uuid = (res.stdout or "").strip()
    if not uuid:
        raise ConversionError(f"Failed to determine UUID for {device}.")
    return uuid


class DiskProvisioner:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def provision(self, work: Path, size_gb: int, firmware: str, *, owner: str) -> DiskImage:
        """Create, partition, format and mount a fresh sparse image under work/."""
        image = work / IMAGE_NAME
        U.banner(self.logger, f"Create {size_gb}GB disk image")
        try:
            U.run_cmd(self.logger, ["truncate", "-s", f"{size_gb}G", str(image)], capture=True)
            label = "GPT/UEFI with 512MB EFI System Partition" if firmware == "ovmf" else "MBR/BIOS"
            self.logger.info(f"Partitioning disk ({label})...")
            for cmd in partition_commands(image, firmware):
                U.run_cmd(self.logger, cmd, capture=True)
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"Could not create disk image {image}", cause=e, stderr=U.to_text(e.stderr)[-400:])
        return self._attach(image, work / "mnt", firmware, owner=owner, fresh=True)

    def attach(self, work: Path, firmware: str, *, owner: str) -> DiskImage:
        """Re-map an existing image (resume) without reformatting it."""
        image = work / IMAGE_NAME
        if not image.exists():
            raise ConversionError(f"Resume image {image} is missing", hint="Discard the resume state with --discard-resume.")
        self.logger.info(f"Re-attaching existing image {image}")
        return self._attach(image, work / "mnt", firmware, owner=owner, fresh=False)

    def _attach(self, image: Path, mount_point: Path, firmware: str, *, owner: str, fresh: bool) -> DiskImage:
        uefi = firmware == "ovmf"
        with contextlib.ExitStack() as stack:
            loop = stack.enter_context(loop_device(self.logger, image, owner=owner))
            stack.enter_context(partition_map(self.logger, loop, owner=owner))
            efi_part = mapper_partition(loop, 1) if uefi else None
            root_part = mapper_partition(loop, 2 if uefi else 1)
            wait_for_block_devices([p for p in (root_part, efi_part) if p])
            if fresh:
                self._format(root_part, efi_part)
            root_uuid = blkid_uuid(self.logger, root_part)
            efi_uuid = blkid_uuid(self.logger, efi_part) if efi_part else None
            self.logger.info(f"Partition UUID: {root_uuid}" + (f", EFI UUID: {efi_uuid}" if efi_uuid else ""))
            stack.enter_context(mounted(self.logger, root_part, mount_point, owner=owner))
            if efi_part:
                stack.enter_context(mounted(self.logger, efi_part, mount_point / "boot" / "efi", owner=owner))
            disk = DiskImage(
                path=image,
                format="raw",
                firmware=firmware,
                partition_table="gpt" if uefi else "msdos",
                loop_device=loop,
                root_partition=root_part,
                mount_point=mount_point,
                root_uuid=root_uuid,
                efi_partition=efi_part,
                efi_uuid=efi_uuid,
            )
            # hand every guard over to the image; nothing is released here on success
            disk._stack = stack.pop_all()
        return disk

    def _format(self, root_part: str, efi_part: Optional[str]) -> None:
        try:
            if efi_part:
                self.logger.info(f"Formatting EFI partition ({efi_part})...")
                U.run_cmd(self.logger, ["mkfs.fat", "-F32", efi_part], capture=True)
            self.logger.info(f"Formatting root partition ({root_part})...")
            # metadata_csum is unreadable for the grub builds shipped by older guests
            U.run_cmd(self.logger, ["mkfs.ext4", "-F", "-O", "^metadata_csum", root_part], capture=True)
        except subprocess.CalledProcessError as e:
            raise ConversionError("Formatting the disk image failed", cause=e, stderr=U.to_text(e.stderr)[-400:])
