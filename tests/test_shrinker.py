import logging
import subprocess
import unittest
from pathlib import Path
from unittest import mock

from lxc2vm.converters.shrinker import ContainerShrinker
from lxc2vm.core.exceptions import ConfigError, ConversionError, ExitCode
from lxc2vm.core.sizing import ShrinkFailed
from lxc2vm.core.utils import GiB, U
from lxc2vm.proxmox.parsers import parse_container_config

LOG = logging.getLogger("test-shrinker")

LV = "/dev/pve/vm-100-disk-0"
MIN_OUT = "Estimated minimum size of the filesystem: 2000000\n"
BLOCK_OUT = "Filesystem volume name:   <none>\nBlock size:               4096\n"


class ScriptedHost:
    """Answers commands by argv prefix; anything unscripted exits 0 silently."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.calls = []

    def run(self, logger, cmd, check=True, capture=False, **kw):
        cmd = list(cmd)
        self.calls.append(cmd)
        rc, out = 0, ""
        for prefix, code, text in self.answers:
            if cmd[:len(prefix)] == list(prefix):
                rc, out = code, text
                break
        if rc != 0 and check:
            raise subprocess.CalledProcessError(rc, cmd, out, "error")
        return subprocess.CompletedProcess(cmd, rc, out, "" if rc == 0 else "error")

    def programs(self):
        return [c[0] for c in self.calls]


class ShrinkerTestCase(unittest.TestCase):
    stype = "lvmthin"
    path = LV
    size = "200G"
    answers = (
        (("resize2fs", "-P"), 0, MIN_OUT),
        (("dumpe2fs",), 0, BLOCK_OUT),
    )

    def setUp(self):
        self.host = ScriptedHost(self.answers)
        self.pct = mock.Mock(name="pct")
        self.pct.mount.return_value = Path("/var/lib/lxc/100/rootfs")
        self.pvesm = mock.Mock(name="pvesm")
        self.pvesm.storage_type.return_value = self.stype
        self.pvesm.path.return_value = self.path
        self.ct = parse_container_config(f"rootfs: local-lvm:vm-100-disk-0,size={self.size}\n")
        patches = [
            mock.patch.object(U, "run_cmd", side_effect=self.host.run),
            mock.patch("lxc2vm.converters.shrinker.measure_used", return_value=28 * GiB),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.shrinker = ContainerShrinker(LOG, self.pct, self.pvesm)


class TestLvm(ShrinkerTestCase):
    def test_filesystem_before_volume(self):
        plan = self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(plan.final_gb, 31)
        self.assertEqual(plan.savings_gb, 169)
        self.assertEqual(plan.filesystem_minimum_gb, 8)
        self.assertEqual(self.host.calls, [
            ["lvchange", "-ay", LV],
            ["e2fsck", "-f", "-y", LV],
            ["resize2fs", "-P", LV],
            ["dumpe2fs", "-h", LV],
            ["resize2fs", LV, "31G"],
            ["lvresize", "-y", "-L", "31G", LV],
            ["e2fsck", "-f", "-y", LV],
        ])
        self.pct.set_rootfs_size.assert_called_once_with(100, "local-lvm:vm-100-disk-0", 31)
        self.pct.unmount.assert_called_once_with(100)


class TestFilesystemMinimum(ShrinkerTestCase):
    answers = (
        (("resize2fs", "-P"), 0, "Estimated minimum size of the filesystem: 10000000\n"),
        (("dumpe2fs",), 0, BLOCK_OUT),
    )

    def test_minimum_raises_target(self):
        plan = self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(plan.filesystem_minimum_gb, 39)
        self.assertEqual(plan.final_gb, 39)
        self.assertIn(["resize2fs", LV, "39G"], self.host.calls)


class TestEveryAttemptFails(ShrinkerTestCase):
    answers = ShrinkerTestCase.answers + ((("resize2fs", LV), 1, ""),)

    def test_volume_left_alone(self):
        with self.assertRaises(ShrinkFailed) as cm:
            self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(cm.exception.code, ExitCode.INSUFFICIENT_SPACE)
        sizes = [c[2] for c in self.host.calls if c[:2] == ["resize2fs", LV]]
        self.assertEqual(sizes, ["31G", "33G", "35G", "37G", "39G"])
        self.assertNotIn("lvresize", self.host.programs())
        self.pct.set_rootfs_size.assert_not_called()


class TestFsckFails(ShrinkerTestCase):
    answers = ((("e2fsck",), 8, ""),)

    def test_aborts_before_resize(self):
        with self.assertRaises(ConversionError):
            self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(self.host.programs(), ["lvchange", "e2fsck", "e2fsck"])
        self.pct.set_rootfs_size.assert_not_called()


class TestZfs(ShrinkerTestCase):
    stype = "zfspool"
    path = "/dev/zvol/rpool/data/vm-100-disk-0"

    def test_volsize(self):
        plan = self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(plan.final_gb, 31)
        self.assertIn(["zfs", "set", "volsize=31G", "rpool/data/vm-100-disk-0"], self.host.calls)
        self.assertNotIn("lvchange", self.host.programs())
        progs = self.host.programs()
        self.assertLess(progs.index("resize2fs"), progs.index("zfs"))


class TestRawImage(ShrinkerTestCase):
    stype = "dir"
    path = "/var/lib/vz/images/100/vm-100-disk-0.raw"
    answers = ShrinkerTestCase.answers + (
        (("qemu-img", "info"), 0, '{"format": "raw", "virtual-size": 214748364800}'),
        (("losetup", "--show"), 0, "/dev/loop7\n"),
    )

    def test_loop_then_truncate(self):
        self.shrinker.shrink(100, self.ct, 1)
        self.assertIn(["resize2fs", "/dev/loop7", "31G"], self.host.calls)
        detach = self.host.calls.index(["losetup", "-d", "/dev/loop7"])
        truncate = self.host.calls.index(["truncate", "-s", "31G", self.path])
        self.assertLess(detach, truncate)


class TestSkip(ShrinkerTestCase):
    size = "30G"

    def test_near_optimal_disk_untouched(self):
        plan = self.shrinker.shrink(100, self.ct, 1)
        self.assertTrue(plan.skipped)
        self.assertEqual(plan.final_gb, 30)
        self.assertEqual(self.host.calls, [])
        self.pct.set_rootfs_size.assert_not_called()


class TestUnsupportedStorage(ShrinkerTestCase):
    stype = "rbd"

    def test_rejected_before_any_command(self):
        with self.assertRaises(ConfigError):
            self.shrinker.shrink(100, self.ct, 1)
        self.assertEqual(self.host.calls, [])
        self.pct.mount.assert_not_called()


if __name__ == "__main__":
    unittest.main()
