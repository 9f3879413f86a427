# lxc2vm/fixers/distro.py
"""
Guest distro detection and per-family kernel/bootloader strategies.

Each family knows which packages give it a bootable kernel and GRUB, how to
install GRUB for BIOS or UEFI, where its generated grub.cfg lives and how a
serial console gets enabled. The BootInjector only sequences these steps.
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Type

SERIAL_ARGS = "console=tty0 console=ttyS0,115200"
INITTAB_LINE = "ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100"

_ID_FAMILY = {
    "debian": "debian",
    "ubuntu": "debian",
    "linuxmint": "debian",
    "pop": "debian",
    "kali": "debian",
    "proxmox": "debian",
    "devuan": "debian",
    "alpine": "alpine",
    "centos": "rhel",
    "rhel": "rhel",
    "rocky": "rhel",
    "alma": "rhel",
    "almalinux": "rhel",
    "fedora": "rhel",
    "ol": "rhel",
    "arch": "arch",
    "manjaro": "arch",
    "endeavouros": "arch",
}


@dataclass(frozen=True)
class DistroInfo:
    family: str
    id: str = "unknown"
    pretty_name: Optional[str] = None


def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for ln in text.splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        try:
            parts = shlex.split(v)
        except ValueError:
            parts = [v.strip("\"'")]
        out[k.strip()] = parts[0] if parts else ""
    return out


def family_for(distro_id: str, id_like: str = "") -> Optional[str]:
    fam = _ID_FAMILY.get(distro_id.lower())
    if fam:
        return fam
    for like in id_like.lower().split():
        fam = _ID_FAMILY.get(like)
        if fam:
            return fam
    return None


def detect_distro(root: Path) -> DistroInfo:
    """os-release ID (then ID_LIKE), then marker files; unknown guests are treated as Debian."""
    osr = root / "etc" / "os-release"
    if not osr.exists():
        osr = root / "usr" / "lib" / "os-release"
    if osr.exists():
        info = parse_os_release(osr.read_text(encoding="utf-8", errors="replace"))
        did = info.get("ID", "unknown") or "unknown"
        fam = family_for(did, info.get("ID_LIKE", ""))
        return DistroInfo(family=fam or "debian", id=did, pretty_name=info.get("PRETTY_NAME"))
    for marker, fam in (("alpine-release", "alpine"), ("redhat-release", "rhel"), ("arch-release", "arch")):
        if (root / "etc" / marker).exists():
            return DistroInfo(family=fam, id=fam)
    return DistroInfo(family="debian")


@dataclass
class ChrootStep:
    """Alternatives are tried in order; the first one that exits 0 wins."""
    label: str
    alternatives: List[List[str]]
    required: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


class DistroStrategy:
    family = "generic"
    grub_install = "grub-install"
    grub_mkconfig = "grub-mkconfig"
    grub_cfg = "/boot/grub/grub.cfg"
    env: Mapping[str, str] = MappingProxyType({})

    def install_steps(self, uefi: bool) -> List[ChrootStep]:
        raise NotImplementedError

    def grub_install_argv(self, uefi: bool, loop_device: str) -> List[str]:
        if uefi:
            return [
                self.grub_install,
                "--target=x86_64-efi",
                "--efi-directory=/boot/efi",
                "--no-nvram",
                "--force",
                "--removable",
            ]
        return [self.grub_install, "--target=i386-pc", "--recheck", "--force", loop_device]

    def grub_install_step(self, uefi: bool, loop_device: str) -> ChrootStep:
        return ChrootStep("install GRUB", [self.grub_install_argv(uefi, loop_device)], env=self.env)

    def grub_config_candidates(self, uefi: bool) -> List[str]:
        return [self.grub_cfg]

    def grub_config_step(self, uefi: bool) -> ChrootStep:
        alts = [[self.grub_mkconfig, "-o", p] for p in self.grub_config_candidates(uefi)]
        return ChrootStep("generate grub.cfg", alts, env=self.env)

    def service_steps(self) -> List[ChrootStep]:
        return []

    def kernel_globs(self) -> Tuple[str, ...]:
        return ("boot/vmlinuz*",)


class DebianStrategy(DistroStrategy):
    family = "debian"
    env: Mapping[str, str] = MappingProxyType({"DEBIAN_FRONTEND": "noninteractive"})

    def install_steps(self, uefi: bool) -> List[ChrootStep]:
        grub = "grub-efi-amd64" if uefi else "grub-pc"
        return [
            ChrootStep("refresh package index", [["apt-get", "update", "-qq"]], env=self.env),
            ChrootStep(
                "install kernel and GRUB",
                [
                    ["apt-get", "install", "-y", "linux-image-generic", "systemd-sysv", grub],
                    ["apt-get", "install", "-y", "linux-image-amd64", "systemd-sysv", grub],
                ],
                env=self.env,
            ),
        ]

    def grub_config_step(self, uefi: bool) -> ChrootStep:
        return ChrootStep(
            "generate grub.cfg",
            [["update-grub"], [self.grub_mkconfig, "-o", self.grub_cfg]],
            env=self.env,
        )


class AlpineStrategy(DistroStrategy):
    family = "alpine"

    def install_steps(self, uefi: bool) -> List[ChrootStep]:
        pkgs = ["linux-lts", "linux-firmware", "grub"] + (["grub-efi", "efibootmgr"] if uefi else ["grub-bios"])
        return [
            ChrootStep("refresh package index", [["apk", "update"]]),
            ChrootStep("install kernel and GRUB", [["apk", "add"] + pkgs]),
            ChrootStep("install OpenRC", [["apk", "add", "openrc"]]),
        ]

    def service_steps(self) -> List[ChrootStep]:
        steps = []
        for svc, level in (
            ("devfs", "sysinit"),
            ("dmesg", "sysinit"),
            ("mdev", "sysinit"),
            ("hwdrivers", "sysinit"),
            ("networking", "boot"),
            ("hostname", "boot"),
        ):
            steps.append(ChrootStep(f"enable {svc}", [["rc-update", "add", svc, level]], required=False))
        return steps


class RhelStrategy(DistroStrategy):
    family = "rhel"
    grub_install = "grub2-install"
    grub_mkconfig = "grub2-mkconfig"
    grub_cfg = "/boot/grub2/grub.cfg"

    def install_steps(self, uefi: bool) -> List[ChrootStep]:
        pkgs = ["kernel"] + (
            ["grub2-efi-x64", "grub2-efi-x64-modules", "shim-x64", "efibootmgr"] if uefi else ["grub2", "grub2-pc"]
        )
        return [
            ChrootStep("install kernel and GRUB", [["yum", "install", "-y"] + pkgs, ["dnf", "install", "-y"] + pkgs]),
        ]

    def grub_install_step(self, uefi: bool, loop_device: str) -> ChrootStep:
        # shim already places a signed loader on the ESP; grub2-install may refuse on EFI
        return ChrootStep("install GRUB", [self.grub_install_argv(uefi, loop_device)], required=not uefi)

    def grub_config_candidates(self, uefi: bool) -> List[str]:
        if uefi:
            return ["/boot/efi/EFI/BOOT/grub.cfg", self.grub_cfg]
        return [self.grub_cfg]


class ArchStrategy(DistroStrategy):
    family = "arch"

    def install_steps(self, uefi: bool) -> List[ChrootStep]:
        pkgs = ["linux", "linux-firmware", "grub"] + (["efibootmgr"] if uefi else [])
        return [ChrootStep("install kernel and GRUB", [["pacman", "-Sy", "--noconfirm"] + pkgs])]


STRATEGIES: Dict[str, Type[DistroStrategy]] = {
    "debian": DebianStrategy,
    "alpine": AlpineStrategy,
    "rhel": RhelStrategy,
    "arch": ArchStrategy,
}


def strategy_for(family: str) -> DistroStrategy:
    return STRATEGIES.get(family, DebianStrategy)()


def add_serial_args(grub_default: str) -> str:
    """Append serial console args to GRUB_CMDLINE_LINUX (added when absent)."""
    lines = grub_default.splitlines()
    for i, ln in enumerate(lines):
        if ln.startswith("GRUB_CMDLINE_LINUX="):
            val = ln.split("=", 1)[1].strip().strip("\"'")
            if "console=ttyS0" in val:
                return grub_default
            val = f"{val} {SERIAL_ARGS}".strip()
            lines[i] = f'GRUB_CMDLINE_LINUX="{val}"'
            break
    else:
        lines.append(f'GRUB_CMDLINE_LINUX="{SERIAL_ARGS}"')
    if not any(ln.startswith("GRUB_TERMINAL=") for ln in lines):
        lines.append('GRUB_TERMINAL="console serial"')
        lines.append('GRUB_SERIAL_COMMAND="serial --speed=115200 --unit=0 --word=8 --parity=no --stop=1"')
    return "\n".join(lines) + "\n"
