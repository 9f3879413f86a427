import logging
import tempfile
import unittest
from pathlib import Path

from lxc2vm.fixers.boot_injector import host_resolv_conf, missing_artifacts
from lxc2vm.fixers.distro import (
    AlpineStrategy,
    DebianStrategy,
    RhelStrategy,
    add_serial_args,
    detect_distro,
    family_for,
    parse_os_release,
    strategy_for,
)
from lxc2vm.fixers.fstab_rewriter import FstabRewriter, render_fstab

LOG = logging.getLogger("test-boot")


class TempRoot(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def write(self, rel, text=""):
        p = self.root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p


class TestFstab(TempRoot):
    def test_bios_layout(self):
        out = render_fstab("abcd-1234")
        lines = out.splitlines()
        self.assertEqual(lines[0], "# /etc/fstab written by lxc2vm")
        self.assertEqual(lines[1], "UUID=abcd-1234 / ext4 errors=remount-ro 0 1")
        self.assertNotIn("/boot/efi", out)

    def test_uefi_adds_esp(self):
        out = render_fstab("root-uuid", "ESP1-2345")
        self.assertIn("UUID=ESP1-2345 /boot/efi vfat umask=0077 0 1", out)

    def test_container_entries_disabled(self):
        prev = "# comment\nnone /dev/shm tmpfs defaults 0 0\n\n"
        out = render_fstab("r", previous=prev)
        self.assertIn("# entries from the container, disabled:", out)
        self.assertIn("# none /dev/shm tmpfs defaults 0 0", out)
        self.assertNotIn("# # comment", out)

    def test_rewrite_writes_file(self):
        self.write("etc/fstab", "proc /proc proc defaults 0 0\n")
        path = FstabRewriter(LOG).rewrite(self.root, "uuid-1")
        text = path.read_text()
        self.assertTrue(text.startswith("# /etc/fstab written by lxc2vm"))
        self.assertIn("# proc /proc proc defaults 0 0", text)

    def test_hostname_kept(self):
        self.write("etc/hostname", "web01\n")
        self.assertEqual(FstabRewriter(LOG).ensure_hostname(self.root), "web01")

    def test_hostname_defaulted(self):
        self.write("etc/hostname", "\n")
        self.assertEqual(FstabRewriter(LOG).ensure_hostname(self.root), "converted-vm")
        self.assertEqual((self.root / "etc/hostname").read_text(), "converted-vm\n")


class TestDistro(TempRoot):
    def test_parse_os_release_quotes(self):
        info = parse_os_release('NAME="Ubuntu"\nID=ubuntu\nPRETTY_NAME="Ubuntu 22.04.3 LTS"\n')
        self.assertEqual(info["ID"], "ubuntu")
        self.assertEqual(info["PRETTY_NAME"], "Ubuntu 22.04.3 LTS")

    def test_family_for_id_like(self):
        self.assertEqual(family_for("rocky"), "rhel")
        self.assertEqual(family_for("someclone", "rhel centos fedora"), "rhel")
        self.assertIsNone(family_for("gentoo"))

    def test_detect_from_os_release(self):
        self.write("etc/os-release", 'ID=alpine\nPRETTY_NAME="Alpine Linux v3.19"\n')
        info = detect_distro(self.root)
        self.assertEqual(info.family, "alpine")
        self.assertEqual(info.pretty_name, "Alpine Linux v3.19")

    def test_detect_from_usr_lib(self):
        self.write("usr/lib/os-release", "ID=arch\n")
        self.assertEqual(detect_distro(self.root).family, "arch")

    def test_detect_from_marker(self):
        self.write("etc/redhat-release", "CentOS Linux release 7.9\n")
        self.assertEqual(detect_distro(self.root).family, "rhel")

    def test_unknown_defaults_to_debian(self):
        self.assertEqual(detect_distro(self.root).family, "debian")
        self.write("etc/os-release", "ID=gentoo\n")
        info = detect_distro(self.root)
        self.assertEqual((info.family, info.id), ("debian", "gentoo"))

    def test_strategy_for(self):
        self.assertIsInstance(strategy_for("alpine"), AlpineStrategy)
        self.assertIsInstance(strategy_for("rhel"), RhelStrategy)
        self.assertIsInstance(strategy_for("nope"), DebianStrategy)

    def test_grub_install_argv(self):
        s = DebianStrategy()
        bios = s.grub_install_argv(False, "/dev/loop7")
        self.assertEqual(bios[-1], "/dev/loop7")
        self.assertIn("--target=i386-pc", bios)
        efi = s.grub_install_argv(True, "/dev/loop7")
        self.assertIn("--target=x86_64-efi", efi)
        self.assertIn("--removable", efi)
        self.assertEqual(RhelStrategy().grub_install_argv(False, "/dev/loop0")[0], "grub2-install")

    def test_debian_picks_grub_package_by_firmware(self):
        step = DebianStrategy().install_steps(uefi=True)[-1]
        self.assertIn("grub-efi-amd64", step.alternatives[0])
        step = DebianStrategy().install_steps(uefi=False)[-1]
        self.assertIn("grub-pc", step.alternatives[0])

    def test_strategy_env_is_read_only(self):
        self.assertEqual(dict(DebianStrategy.env), {"DEBIAN_FRONTEND": "noninteractive"})
        self.assertEqual(dict(AlpineStrategy().grub_install_step(False, "/dev/loop0").env), {})
        with self.assertRaises(TypeError):
            AlpineStrategy.env["DEBIAN_FRONTEND"] = "noninteractive"
        with self.assertRaises(TypeError):
            DebianStrategy().grub_config_step(False).env["LANG"] = "C"
        self.assertEqual(dict(RhelStrategy.env), {})

    def test_rhel_efi_grub_install_optional(self):
        self.assertFalse(RhelStrategy().grub_install_step(True, "/dev/loop0").required)
        self.assertTrue(RhelStrategy().grub_install_step(False, "/dev/loop0").required)

    def test_serial_args_appended(self):
        out = add_serial_args('GRUB_DEFAULT=0\nGRUB_CMDLINE_LINUX="quiet"\n')
        self.assertIn('GRUB_CMDLINE_LINUX="quiet console=tty0 console=ttyS0,115200"', out)
        self.assertIn('GRUB_TERMINAL="console serial"', out)
        self.assertEqual(add_serial_args(out), out)

    def test_serial_args_on_empty_file(self):
        out = add_serial_args("")
        self.assertIn('GRUB_CMDLINE_LINUX="console=tty0 console=ttyS0,115200"', out)


class TestBootArtifacts(TempRoot):
    def test_all_missing(self):
        missing = missing_artifacts(self.root, DebianStrategy(), uefi=False)
        self.assertEqual(len(missing), 2)

    def test_present(self):
        self.write("boot/vmlinuz-6.1.0-18-amd64")
        self.write("boot/grub/grub.cfg", "menuentry\n")
        self.assertEqual(missing_artifacts(self.root, DebianStrategy(), uefi=False), [])

    def test_rhel_efi_accepts_esp_config(self):
        self.write("boot/vmlinuz-5.14.0")
        self.write("boot/efi/EFI/BOOT/grub.cfg")
        self.assertEqual(missing_artifacts(self.root, RhelStrategy(), uefi=True), [])

    def test_resolv_conf_restored(self):
        guest = self.write("etc/resolv.conf", "nameserver 10.0.0.1\n")
        with host_resolv_conf(self.root):
            self.assertTrue((self.root / "etc/resolv.conf.lxc2vm").exists())
        self.assertEqual(guest.read_text(), "nameserver 10.0.0.1\n")
        self.assertFalse((self.root / "etc/resolv.conf.lxc2vm").exists())

    def test_resolv_conf_removed_when_guest_had_none(self):
        (self.root / "etc").mkdir()
        with host_resolv_conf(self.root):
            pass
        self.assertFalse((self.root / "etc/resolv.conf").exists())


if __name__ == "__main__":
    unittest.main()
