import logging
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from lxc2vm.core.exceptions import ConversionError
from lxc2vm.core.guards import held_by
from lxc2vm.core.utils import U
from lxc2vm.fixers.remediator import Remediator
from lxc2vm.testers.health_validator import HealthCheck, HealthReport

LOG = logging.getLogger("test-remediator")

OWNER = "ct100-vm200"


class HostLog:
    """Records commands; losetup hands out /dev/loop7 and qemu-img reports `image_format`."""

    def __init__(self, image_format="qcow2"):
        self.image_format = image_format
        self.calls = []

    def run(self, logger, cmd, check=True, capture=False, **kw):
        cmd = list(cmd)
        self.calls.append(cmd)
        out = ""
        if cmd[:3] == ["losetup", "--show", "-f"]:
            out = "/dev/loop7\n"
        elif cmd[:2] == ["qemu-img", "info"]:
            out = f'{{"format": "{self.image_format}"}}'
        return subprocess.CompletedProcess(cmd, 0, out, "")

    def index(self, prefix):
        for i, c in enumerate(self.calls):
            if c[:len(prefix)] == list(prefix):
                return i
        raise AssertionError(f"{prefix} never ran")


def degraded():
    return HealthReport(
        checks=[HealthCheck("VM config exists", True, critical=True)],
        live=True,
        agent_ok=True,
        root_options="ro,relatime",
        remount_state="failed",
    )


class RemediatorTestCase(unittest.TestCase):
    disk_path = "/dev/pve/vm-200-disk-1"
    image_format = "raw"

    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.work = Path(self.td.name)
        self.root = self.work / "remediate-200"
        (self.root / "etc" / "default").mkdir(parents=True)
        (self.root / "etc" / "os-release").write_text("ID=debian\n")
        (self.root / "etc" / "default" / "grub").write_text('GRUB_CMDLINE_LINUX_DEFAULT="quiet ro"\n')
        (self.root / "var" / "cache" / "apt" / "archives").mkdir(parents=True)

        self.host = HostLog(self.image_format)
        self.qm = mock.Mock(name="qm")
        self.qm.config.return_value = {"scsi0": "local-lvm:vm-200-disk-1,size=34G"}
        self.pvesm = mock.Mock(name="pvesm")
        self.pvesm.path.return_value = self.disk_path
        self.validator = mock.Mock(name="validator")
        self.validator.live_check.side_effect = self.recovered
        patches = [
            mock.patch.object(U, "run_cmd", side_effect=self.host.run),
            mock.patch.object(U, "ensure_dir"),
            mock.patch("lxc2vm.fixers.remediator.time.sleep"),
            mock.patch("lxc2vm.fixers.remediator.wait_for_block_devices"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.remediator = Remediator(LOG, self.qm, self.pvesm, self.validator)

    def tearDown(self):
        self.td.cleanup()

    @staticmethod
    def recovered(vmid, report):
        report.live = True
        report.agent_ok = True
        report.root_options = "rw,relatime"
        report.remount_state = "active"
        return report

    def remediate(self, uefi=False):
        return self.remediator.remediate(200, degraded(), uefi=uefi, owner=OWNER, work_dir=self.work)


class TestRawDisk(RemediatorTestCase):
    def test_offline_repair_then_one_recheck(self):
        after = self.remediate()
        self.assertTrue(after.remediated)
        self.assertFalse(after.needs_remediation)
        self.qm.stop.assert_called_once_with(200)
        self.validator.start.assert_called_once()
        self.assertEqual(self.validator.live_check.call_count, 1)

        part = "/dev/mapper/loop7p1"
        order = [
            self.host.index(["losetup", "--show", "-f", self.disk_path]),
            self.host.index(["kpartx", "-a", "/dev/loop7"]),
            self.host.index(["mount", part, str(self.root)]),
            self.host.index(["chroot", str(self.root), "update-grub"]),
            self.host.index(["umount", str(self.root)]),
            self.host.index(["e2fsck", "-f", "-y", part]),
            self.host.index(["kpartx", "-d", "/dev/loop7"]),
            self.host.index(["losetup", "-d", "/dev/loop7"]),
        ]
        self.assertEqual(order, sorted(order))
        self.assertEqual(held_by(OWNER), [])

    def test_guest_files_repaired(self):
        self.remediate()
        grub = (self.root / "etc" / "default" / "grub").read_text()
        self.assertIn('GRUB_CMDLINE_LINUX_DEFAULT="quiet rw"', grub)
        self.assertEqual((self.root / "tmp").stat().st_mode & 0o7777, 0o1777)
        self.assertTrue((self.root / "var" / "cache" / "apt" / "archives" / "partial").is_dir())

    def test_uefi_root_is_second_partition(self):
        self.remediate(uefi=True)
        self.host.index(["mount", "/dev/mapper/loop7p2", str(self.root)])
        self.host.index(["e2fsck", "-f", "-y", "/dev/mapper/loop7p2"])

    def test_still_degraded_is_reported_not_retried(self):
        def still_ro(vmid, report):
            report.live = True
            report.agent_ok = True
            report.root_options = "ro,relatime"
            report.remount_state = "failed"
            return report

        self.validator.live_check.side_effect = still_ro
        after = self.remediate()
        self.assertTrue(after.needs_remediation)
        self.assertEqual(self.validator.live_check.call_count, 1)
        self.assertEqual(self.qm.stop.call_count, 1)

    def test_silent_agent_leaves_repair_unconfirmed(self):
        self.validator.live_check.side_effect = lambda vmid, report: report
        after = self.remediate()
        self.assertTrue(after.remediated)
        self.assertFalse(after.agent_ok)
        self.assertIsNone(after.root_options)


class TestQcow2Disk(RemediatorTestCase):
    disk_path = "/var/lib/vz/images/200/vm-200-disk-1.qcow2"
    image_format = "qcow2"

    def test_mapped_through_nbd(self):
        self.remediate()
        connect = self.host.index(["qemu-nbd", "--format=qcow2", "--connect", "/dev/nbd0", self.disk_path])
        mount = self.host.index(["mount", "/dev/nbd0p1", str(self.root)])
        fsck = self.host.index(["e2fsck", "-f", "-y", "/dev/nbd0p1"])
        disconnect = self.host.index(["qemu-nbd", "--disconnect", "/dev/nbd0"])
        self.assertEqual([connect, mount, fsck, disconnect], sorted([connect, mount, fsck, disconnect]))
        self.assertNotIn("losetup", [c[0] for c in self.host.calls])
        self.assertEqual(held_by(OWNER), [])


class TestNoDisk(RemediatorTestCase):
    def test_missing_scsi0(self):
        self.qm.config.return_value = {}
        with self.assertRaises(ConversionError):
            self.remediate()
        self.assertEqual(self.host.calls, [])
        self.validator.start.assert_not_called()


if __name__ == "__main__":
    unittest.main()
