import logging
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from lxc2vm.core.exceptions import ConversionError
from lxc2vm.core.guards import held_by
from lxc2vm.core.utils import U
from lxc2vm.fixers.boot_injector import BootInjector

LOG = logging.getLogger("test-boot-injector")

OWNER = "ct100-vm200"
OS_RELEASE = 'ID=debian\nPRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n'


class ChrootHost:
    """Every command exits 0 unless its argv starts with one of `failing`."""

    def __init__(self, failing=()):
        self.failing = [list(f) for f in failing]
        self.calls = []

    def run(self, logger, cmd, check=True, capture=False, **kw):
        cmd = list(cmd)
        self.calls.append(cmd)
        if any(cmd[:len(f)] == f for f in self.failing):
            if check:
                raise subprocess.CalledProcessError(1, cmd, "", "failed")
            return subprocess.CompletedProcess(cmd, 1, "", "failed")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def in_chroot(self, root):
        return [c[2:] for c in self.calls if c[:2] == ["chroot", str(root)]]


class InjectorTestCase(unittest.TestCase):
    uefi = False
    kernel = True
    grub_cfg = True

    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)
        (self.root / "etc").mkdir()
        (self.root / "etc" / "os-release").write_text(OS_RELEASE)
        (self.root / "etc" / "hostname").write_text("web01\n")
        (self.root / "boot" / "grub").mkdir(parents=True)
        if self.kernel:
            (self.root / "boot" / "vmlinuz-6.1.0-18-amd64").write_text("")
        if self.grub_cfg:
            (self.root / "boot" / "grub" / "grub.cfg").write_text("")
        self.image = mock.Mock(
            mount_point=self.root,
            esp_mount=self.root / "boot" / "efi",
            root_uuid="0b1c2d3e-root",
            efi_uuid="ABCD-1234" if self.uefi else None,
            uefi=self.uefi,
            firmware="ovmf" if self.uefi else "seabios",
            loop_device="/dev/loop7",
        )

    def tearDown(self):
        self.td.cleanup()

    def inject(self, failing=()):
        self.host = ChrootHost(failing)
        with mock.patch.object(U, "run_cmd", side_effect=self.host.run), mock.patch.object(U, "ensure_dir"):
            return BootInjector(LOG).inject(self.image, keep_network=False, owner=OWNER)


class TestBiosInjection(InjectorTestCase):
    def test_debian_guest(self):
        distro = self.inject()
        self.assertEqual(distro.family, "debian")
        steps = self.host.in_chroot(self.root)
        self.assertEqual(steps[0], ["apt-get", "update", "-qq"])
        self.assertEqual(steps[1][-1], "grub-pc")
        self.assertIn(["grub-install", "--target=i386-pc", "--recheck", "--force", "/dev/loop7"], steps)
        self.assertIn(["update-grub"], steps)
        self.assertIn("UUID=0b1c2d3e-root", (self.root / "etc" / "fstab").read_text())
        self.assertIn("console=ttyS0,115200", (self.root / "etc" / "default" / "grub").read_text())
        self.assertEqual(held_by(OWNER), [])

    def test_host_grub_install_fallback(self):
        self.inject(failing=[("chroot", str(self.root), "grub-install")])
        host_install = [c for c in self.host.calls if c[0] == "grub-install"]
        self.assertEqual(host_install, [[
            "grub-install",
            "--target=i386-pc",
            f"--boot-directory={self.root / 'boot'}",
            "--recheck",
            "--force",
            "/dev/loop7",
        ]])
        self.assertIn(["update-grub"], self.host.in_chroot(self.root))

    def test_fallback_failure_is_fatal(self):
        with self.assertRaises(ConversionError) as cm:
            self.inject(failing=[("chroot", str(self.root), "grub-install"), ("grub-install",)])
        self.assertIn("host fallback", str(cm.exception))
        self.assertEqual(held_by(OWNER), [])

    def test_package_install_failure_is_fatal(self):
        with self.assertRaises(ConversionError):
            self.inject(failing=[("chroot", str(self.root), "apt-get", "install")])
        steps = self.host.in_chroot(self.root)
        # both kernel package names were tried before giving up
        self.assertEqual(len([s for s in steps if s[:2] == ["apt-get", "install"]]), 2)
        self.assertNotIn("grub-install", [s[0] for s in steps])


class TestUefiInjection(InjectorTestCase):
    uefi = True

    def test_chroot_grub_failure_has_no_fallback(self):
        with self.assertRaises(ConversionError):
            self.inject(failing=[("chroot", str(self.root), "grub-install")])
        self.assertEqual([c for c in self.host.calls if c[0] == "grub-install"], [])
        self.assertEqual(held_by(OWNER), [])

    def test_efi_grub_target(self):
        self.inject()
        installs = [s for s in self.host.in_chroot(self.root) if s[0] == "grub-install"]
        self.assertIn("--target=x86_64-efi", installs[0])
        self.assertIn("--removable", installs[0])
        self.assertIn("UUID=ABCD-1234", (self.root / "etc" / "fstab").read_text())


class TestMissingKernel(InjectorTestCase):
    kernel = False

    def test_fatal(self):
        with self.assertRaises(ConversionError) as cm:
            self.inject()
        self.assertIn("kernel image", str(cm.exception))


class TestMissingGrubConfig(InjectorTestCase):
    grub_cfg = False

    def test_fatal(self):
        with self.assertRaises(ConversionError) as cm:
            self.inject()
        self.assertIn("grub config", str(cm.exception))
        self.assertNotIn("kernel image", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
