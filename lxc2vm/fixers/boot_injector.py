# lxc2vm/fixers/boot_injector.py
from __future__ import annotations

import contextlib
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterator, List

from ..converters.disk_provisioner import DiskImage
from ..core.exceptions import ConversionError
from ..core.guards import bind_mounts
from ..core.utils import U
from .distro import INITTAB_LINE, ChrootStep, DistroInfo, DistroStrategy, add_serial_args, detect_distro, strategy_for
from .fstab_rewriter import FstabRewriter
from .network_fixer import NetworkFixer, NetworkMode

CHROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


@contextlib.contextmanager
def host_resolv_conf(root: Path) -> Iterator[None]:
    """Host resolv.conf inside root for the chroot session; the guest's own file comes back afterwards."""
    target = root / "etc" / "resolv.conf"
    saved = target.with_name("resolv.conf.lxc2vm")
    had = target.exists() or target.is_symlink()
    if had:
        os.replace(target, saved)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile("/etc/resolv.conf", target)
        except OSError:
            pass
        yield
    finally:
        if had:
            os.replace(saved, target)
        else:
            U.safe_unlink(target)


def missing_artifacts(root: Path, strategy: DistroStrategy, uefi: bool) -> List[str]:
    """Kernel image and grub.cfg must exist for the guest to boot."""
    missing = []
    if not any(next(iter(root.glob(g)), None) for g in strategy.kernel_globs()):
        missing.append("kernel image (/boot/vmlinuz*)")
    cfgs = strategy.grub_config_candidates(uefi)
    if not any((root / p.lstrip("/")).is_file() for p in cfgs):
        missing.append(f"grub config ({' or '.join(cfgs)})")
    return missing


class BootInjector:
    """
    Makes a copied container filesystem bootable: fstab, hostname, network,
    kernel + GRUB via the guest's own package manager, serial console.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _chroot(self, root: Path, step: ChrootStep) -> bool:
        env = dict(os.environ, PATH=CHROOT_PATH, **step.env)
        for argv in step.alternatives:
            res = U.run_cmd(self.logger, ["chroot", str(root)] + argv, capture=True, check=False, env=env)
            if res.returncode == 0:
                return True
            self.logger.debug(f"chroot {' '.join(argv)} exited {res.returncode}: {(res.stderr or '')[-400:]}")
        if step.required:
            raise ConversionError(
                f"Chroot step failed: {step.label}",
                hint="See the log file for the package manager output.",
                command=" ".join(step.alternatives[-1]),
            )
        self.logger.warning(f"Optional step failed: {step.label}")
        return False

    def inject(self, image: DiskImage, *, keep_network: bool, owner: str) -> DistroInfo:
        root = image.mount_point
        U.banner(self.logger, "Bootloader injection")
        distro = detect_distro(root)
        strategy = strategy_for(distro.family)
        self.logger.info(f"Detected distro family: {distro.family} (ID: {distro.id})")

        FstabRewriter(self.logger).rewrite(root, image.root_uuid, image.efi_uuid)
        FstabRewriter(self.logger).ensure_hostname(root)
        mode = NetworkMode.PRESERVE if keep_network else NetworkMode.REPLACE
        NetworkFixer(self.logger, mode).fix(root)

        with bind_mounts(self.logger, root, owner=owner), host_resolv_conf(root):
            self._install_boot(root, strategy, image)
            self._enable_serial_getty(root)
            for step in strategy.service_steps():
                self._chroot(root, step)

        missing = missing_artifacts(root, strategy, image.uefi)
        if missing:
            raise ConversionError(
                f"Boot artifacts missing after injection: {', '.join(missing)}",
                hint="The guest will not boot; check package manager output in the log.",
                family=distro.family,
            )
        if image.uefi and not (image.esp_mount / "EFI" / "BOOT" / "BOOTX64.EFI").exists():
            self.logger.warning("EFI/BOOT/BOOTX64.EFI not found on the ESP; UEFI boot may need manual repair.")
        self.logger.info(f"Boot artifacts verified for {distro.family}.")
        return distro

    def _install_boot(self, root: Path, strategy: DistroStrategy, image: DiskImage) -> None:
        uefi = image.uefi
        steps = strategy.install_steps(uefi)
        self.logger.info(f"Entering chroot to install kernel and GRUB ({strategy.family} / {image.firmware})...")
        with U.progress() as progress:
            task = progress.add_task("Installing kernel + GRUB", total=len(steps) + 2)
            for step in steps:
                progress.update(task, description=step.label)
                self._chroot(root, step)
                progress.advance(task)

            progress.update(task, description="install GRUB")
            grub_step = strategy.grub_install_step(uefi, image.loop_device)
            try:
                self._chroot(root, grub_step)
            except ConversionError:
                if uefi:
                    raise
                self._host_grub_install(root, image.loop_device)
            progress.advance(task)

            self._serial_grub_args(root)
            progress.update(task, description="generate grub.cfg")
            self._chroot(root, strategy.grub_config_step(uefi))
            progress.advance(task)

    def _host_grub_install(self, root: Path, loop_device: str) -> None:
        """BIOS only: one attempt with the host's grub-install against the same loop device."""
        self.logger.warning("grub-install inside the chroot failed; trying the host grub-install once...")
        cmd = ["grub-install", "--target=i386-pc", f"--boot-directory={root / 'boot'}", "--recheck", "--force", loop_device]
        try:
            U.run_cmd(self.logger, cmd, capture=True)
        except subprocess.CalledProcessError as e:
            raise ConversionError(
                "GRUB installation failed (chroot and host fallback)",
                cause=e,
                hint="Install grub-pc on the host or repair the guest bootloader manually.",
            )
        self.logger.info("Host grub-install succeeded.")

    def _serial_grub_args(self, root: Path) -> None:
        path = root / "etc" / "default" / "grub"
        current = path.read_text(encoding="utf-8", errors="replace") if path.exists() else ""
        updated = add_serial_args(current)
        if updated != current:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(updated, encoding="utf-8")
            self.logger.info("Serial console added to GRUB kernel arguments")

    def _enable_serial_getty(self, root: Path) -> None:
        if (root / "bin" / "systemctl").exists() or (root / "usr" / "bin" / "systemctl").exists():
            self._chroot(root, ChrootStep("enable serial getty", [["systemctl", "enable", "serial-getty@ttyS0.service"]], required=False))
            return
        inittab = root / "etc" / "inittab"
        if inittab.exists():
            text = inittab.read_text(encoding="utf-8", errors="replace")
            if "ttyS0" not in text:
                inittab.write_text(text.rstrip("\n") + "\n" + INITTAB_LINE + "\n", encoding="utf-8")
                self.logger.info("Serial getty added to /etc/inittab")
