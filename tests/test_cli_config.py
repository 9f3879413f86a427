import logging
import tempfile
import unittest
from pathlib import Path

from lxc2vm.cli.argument_parser import build_jobs, parse_args_with_config
from lxc2vm.core.exceptions import ConfigError

LOG = logging.getLogger("test-cli")


class TestCLIConfigTwoPhaseParse(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.dir = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def config(self, name, text):
        p = self.dir / name
        p.write_text(text, encoding="utf-8")
        return str(p)

    def parse(self, *argv):
        return parse_args_with_config(argv=list(argv), logger=LOG)

    def test_config_supplies_job(self):
        cfg = self.config("cfg.yaml", "ctid: 100\nvmid: 200\nstorage: local-lvm\ndisk-size: 32\nbios: ovmf\n")
        args, conf, _ = self.parse("--config", cfg)
        self.assertEqual(conf["disk_size"], 32)
        [job] = build_jobs(LOG, args, conf)
        self.assertEqual((job.ctid, job.vmid, job.storage, job.disk_size_gb), (100, 200, "local-lvm", 32))
        self.assertTrue(job.uefi)

    def test_command_line_beats_config(self):
        cfg = self.config("cfg.yaml", "storage: local-lvm\ndisk_size: 32\n")
        args, conf, _ = self.parse("--config", cfg, "-c", "101", "-v", "201", "-d", "16")
        [job] = build_jobs(LOG, args, conf)
        self.assertEqual(job.disk_size_gb, 16)

    def test_later_config_wins(self):
        base = self.config("a.yaml", "storage: local-lvm\nheadroom: 1\n")
        over = self.config("b.yaml", "headroom: 3\n")
        args, conf, _ = self.parse("--config", base, "--config", over, "-c", "1", "-v", "2", "--shrink")
        [job] = build_jobs(LOG, args, conf)
        self.assertEqual(job.headroom_gb, 3)
        self.assertEqual(job.storage, "local-lvm")

    def test_jobs_list(self):
        cfg = self.config(
            "batch.yaml",
            "storage: local-lvm\nshrink: true\nparallel: 2\njobs:\n"
            "  - {ctid: 100, vmid: 200}\n"
            "  - {ctid: 101, vmid: 201, disk_size: 16, bios: ovmf}\n",
        )
        args, conf, _ = self.parse("--config", cfg)
        self.assertEqual(args.parallel, 2)
        jobs = build_jobs(LOG, args, conf)
        self.assertEqual([(j.ctid, j.vmid) for j in jobs], [(100, 200), (101, 201)])
        self.assertIsNone(jobs[0].disk_size_gb)
        self.assertEqual((jobs[1].disk_size_gb, jobs[1].firmware), (16, "ovmf"))

    def test_jobs_list_rejects_repeats(self):
        cfg = self.config(
            "batch.yaml",
            "storage: s\ndisk_size: 8\njobs:\n  - {ctid: 100, vmid: 200}\n  - {ctid: 100, vmid: 201}\n",
        )
        args, conf, _ = self.parse("--config", cfg)
        with self.assertRaises(ConfigError):
            build_jobs(LOG, args, conf)

    def test_batch_flag(self):
        args, conf, _ = self.parse("--batch", "100:200,101:201", "-s", "local-lvm", "--shrink", "--parallel", "2")
        jobs = build_jobs(LOG, args, conf)
        self.assertEqual([j.key for j in jobs], ["ct100-vm200", "ct101-vm201"])

    def test_missing_ids(self):
        args, conf, _ = self.parse("-s", "local-lvm", "-d", "8")
        with self.assertRaises(ConfigError) as cm:
            build_jobs(LOG, args, conf)
        self.assertIn("-c", cm.exception.hint)

    def test_flag_combinations_validated(self):
        args, conf, _ = self.parse("-c", "1", "-v", "2", "-s", "x", "-d", "8", "--rollback-on-failure")
        with self.assertRaises(ConfigError):
            build_jobs(LOG, args, conf)
        args, conf, _ = self.parse("-c", "1", "-v", "2", "-s", "x")
        with self.assertRaises(ConfigError):
            build_jobs(LOG, args, conf)

    def test_bad_yaml(self):
        cfg = self.config("bad.yaml", "storage: [unclosed\n")
        with self.assertRaises(ConfigError):
            self.parse("--config", cfg)


if __name__ == "__main__":
    unittest.main()
