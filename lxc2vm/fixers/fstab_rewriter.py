from __future__ import annotations
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

DEFAULT_HOSTNAME = "converted-vm"
ROOT_OPTIONS = "errors=remount-ro"
ESP_OPTIONS = "umask=0077"


@dataclass
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str
    dump: int = 0
    passno: int = 1

    def render(self) -> str:
        return f"{self.spec} {self.mountpoint} {self.fstype} {self.options} {self.dump} {self.passno}"


def vm_entries(root_uuid: str, efi_uuid: Optional[str] = None) -> List[FstabEntry]:
    entries = [FstabEntry(f"UUID={root_uuid}", "/", "ext4", ROOT_OPTIONS)]
    if efi_uuid:
        entries.append(FstabEntry(f"UUID={efi_uuid}", "/boot/efi", "vfat", ESP_OPTIONS))
    return entries


def render_fstab(root_uuid: str, efi_uuid: Optional[str] = None, previous: str = "") -> str:
    """
    Fresh fstab for the VM. Whatever the container had (usually nothing, or
    pseudo filesystems the host provided) is carried along commented out.
    """
    lines = ["# /etc/fstab written by lxc2vm"]
    lines += [e.render() for e in vm_entries(root_uuid, efi_uuid)]
    old = [ln for ln in previous.splitlines() if ln.strip() and not ln.lstrip().startswith("#")]
    if old:
        lines.append("")
        lines.append("# entries from the container, disabled:")
        lines += [f"# {ln}" for ln in old]
    return "\n".join(lines) + "\n"


class FstabRewriter:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def rewrite(self, root: Path, root_uuid: str, efi_uuid: Optional[str] = None) -> Path:
        fstab = root / "etc" / "fstab"
        previous = fstab.read_text(encoding="utf-8", errors="replace") if fstab.exists() else ""
        fstab.parent.mkdir(parents=True, exist_ok=True)
        fstab.write_text(render_fstab(root_uuid, efi_uuid, previous), encoding="utf-8")
        self.logger.info(f"fstab: / -> UUID={root_uuid}" + (f", /boot/efi -> UUID={efi_uuid}" if efi_uuid else ""))
        return fstab

    def ensure_hostname(self, root: Path, default: str = DEFAULT_HOSTNAME) -> str:
        path = root / "etc" / "hostname"
        current = path.read_text(encoding="utf-8", errors="replace").strip() if path.exists() else ""
        if current:
            return current
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(default + "\n", encoding="utf-8")
        self.logger.info(f"hostname was empty; set to {default}")
        return default
