from __future__ import annotations
import argparse
import sys
from typing import Any, Dict, List, Optional, Sequence

from rich.prompt import Prompt

from ..core.logger import DEFAULT_LOG_FILE, c
from ..config.config_loader import Config
from .. import __version__
from ..converters.workspace import Chooser, MountCandidate
from ..core.exceptions import ConfigError
from ..core.job import DEFAULT_BRIDGE, DEFAULT_HEADROOM_GB, DISK_FORMATS, FIRMWARES, ConversionJob
from ..core.utils import U
from ..orchestrator.batch import parse_pairs

YAML_EXAMPLE = r"""# lxc2vm config
# Run:
# sudo lxc2vm --config convert.yaml
# or merge configs (later files win):
# sudo lxc2vm --config base.yaml --config overrides.yaml
#
# Every long option can be set here with dashes or underscores.
storage: local-lvm
format: qcow2
bios: seabios
bridge: vmbr0
shrink: true
headroom: 2
snapshot: true
rollback_on_failure: true
start: true
# Several conversions, run up to `parallel` at a time. Keys in a job
# override the shared ones above.
parallel: 2
jobs:
  - {ctid: 100, vmid: 200}
  - {ctid: 101, vmid: 201, disk_size: 16, bios: ovmf}
"""


class CLI:
    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        epilog = (
            c("YAML example:\n", "cyan", ["bold"]) +
            c(YAML_EXAMPLE, "cyan") +
            "\n" +
            c("Examples:\n", "cyan", ["bold"]) +
            c(" lxc2vm -c 100 -v 200 -s local-lvm -d 32\n", "cyan") +
            c(" lxc2vm -c 100 -v 200 -s local-lvm --shrink --snapshot --rollback-on-failure -S\n", "cyan") +
            c(" lxc2vm -c 100 -v 200 -s local-lvm -B ovmf -d 20 --export /mnt/backup/vm200.qcow2\n", "cyan") +
            c(" lxc2vm --batch 100:200,101:201,102:202 -s local-lvm --shrink --parallel 2\n", "cyan") +
            c(" lxc2vm -c 100 -v 200 -s local-lvm -d 32 --resume\n", "cyan") +
            "\n" +
            c("Exit codes:\n", "cyan", ["bold"]) +
            c(" 0 ok, 2 bad input, 3 not found, 4 insufficient space, 5 permission denied,\n", "cyan") +
            c(" 6 migration failed (resumable), 7 conversion failed, 130 interrupted\n", "cyan")
        )
        p = argparse.ArgumentParser(
            prog="lxc2vm",
            description=c("lxc2vm: Proxmox LXC container → bootable VM converter", "green", ["bold"]),
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=epilog,
        )
        p.add_argument("--config", action="append", default=[], help="YAML/JSON config file (repeatable; later overrides earlier).")
        p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
        p.add_argument("--version", action="version", version=__version__)
        p.add_argument("-V", "--verbose", action="count", default=0, help="Verbosity: -V, -VV")
        p.add_argument("--log-file", default=DEFAULT_LOG_FILE, help=f"Append logs to this file (default: {DEFAULT_LOG_FILE}).")

        g = p.add_argument_group("conversion")
        g.add_argument("-c", "--ctid", default=None, help="Source container ID.")
        g.add_argument("-v", "--vmid", default=None, help="New VM ID.")
        g.add_argument("-s", "--storage", default=None, help="Target storage for the VM disk (e.g. local-lvm).")
        g.add_argument("-d", "--disk-size", dest="disk_size", default=None, help="VM disk size in GB (omit with --shrink to derive it).")
        g.add_argument("-f", "--format", default="qcow2", choices=list(DISK_FORMATS), help="Disk format on the target storage.")
        g.add_argument("-b", "--bridge", default=DEFAULT_BRIDGE, help=f"Network bridge (default: {DEFAULT_BRIDGE}).")
        g.add_argument("-t", "--temp-dir", dest="temp_dir", default=None, help="Workspace directory for the temporary image.")
        g.add_argument("-B", "--bios", default="seabios", choices=list(FIRMWARES), help="Firmware: seabios (MBR) or ovmf (GPT + ESP).")
        g.add_argument("-k", "--keep-network", dest="keep_network", action="store_true", help="Keep the container's network config, renaming eth0 to ens18.")
        g.add_argument("-S", "--start", action="store_true", help="Start the VM and run guest-agent health checks.")
        g.add_argument("--workspace-choice", dest="workspace_choice", default=None,
                       help="Pre-answer the workspace prompt (list number or mount path).")

        s = p.add_argument_group("shrink")
        s.add_argument("--shrink", action="store_true", help="Shrink the container disk to used space + headroom first.")
        s.add_argument("--headroom", type=int, default=DEFAULT_HEADROOM_GB, help=f"Free space to keep after shrink, GB (default: {DEFAULT_HEADROOM_GB}).")

        safety = p.add_argument_group("safety")
        safety.add_argument("--snapshot", action="store_true", help="Snapshot the container before converting.")
        safety.add_argument("--rollback-on-failure", dest="rollback_on_failure", action="store_true", help="Roll back to that snapshot if the conversion fails.")
        safety.add_argument("--resume", action="store_true", help="Continue an interrupted copy, reusing its workspace.")
        safety.add_argument("--discard-resume", dest="discard_resume", action="store_true", help="Drop saved resume state and its workspace before running.")
        safety.add_argument("--dry-run", dest="dry_run", action="store_true", help="Show the plan without changing anything.")

        post = p.add_argument_group("after conversion")
        post.add_argument("--destroy-source", dest="destroy_source", action="store_true", help="Destroy the container once the VM is ready.")
        post.add_argument("--as-template", dest="as_template", action="store_true", help="Turn the new VM into a Proxmox template.")
        post.add_argument("--export", default=None, help="Also copy the VM disk to this file or directory (qcow2/raw/vmdk by extension).")

        b = p.add_argument_group("batch")
        b.add_argument("--batch", default=None, metavar="PAIRS", help="Comma-separated CTID:VMID pairs, e.g. 100:200,101:201.")
        b.add_argument("--parallel", type=int, default=1, metavar="N", help="Conversions to run at once in batch mode (default: 1).")
        return p


def prompt_workspace(candidates: Sequence[MountCandidate], required: int) -> str:
    """Interactive pick between several mounts with room for the image."""
    print(c(f"\nSeveral mount points have {U.human_bytes(required)} free:", "yellow", ["bold"]), file=sys.stderr)
    for i, cand in enumerate(candidates, 1):
        print(f"  [{i}] {cand.path} ({U.human_bytes(cand.avail_bytes)} free)", file=sys.stderr)
    return Prompt.ask("Select workspace [number or path]", default="1")


def interactive_chooser() -> Optional[Chooser]:
    return prompt_workspace if sys.stdin.isatty() else None


def parse_args_with_config(argv=None, logger=None):
    """Two-phase parse.

    Phase 0: parse ONLY the flags needed to find config/logging
    Phase 1: load+merge config files and apply as argparse defaults
    Phase 2: full parse_args with defaults applied

    Returns: (args, merged_config_dict, logger)
    """
    parser = CLI.build_parser()

    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-V", "--verbose", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=DEFAULT_LOG_FILE)
    args0, _rest = pre.parse_known_args(argv)

    if logger is None:
        from ..core.logger import Log  # local import to avoid cycles
        logger = Log.setup(getattr(args0, "verbose", 0), getattr(args0, "log_file", None))

    conf: Dict[str, Any] = {}
    cfgs = getattr(args0, "config", None) or []
    if cfgs:
        cfgs = Config.expand_configs(logger, list(cfgs))
        conf = Config.load_many(logger, cfgs)
        Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_args(argv)
    return args, conf, logger


def build_jobs(logger, args: argparse.Namespace, conf: Dict[str, Any]) -> List[ConversionJob]:
    """--batch pairs, else the config's jobs: list, else the single -c/-v pair."""
    if args.batch:
        return [ConversionJob.from_args(args, ct, vm).validate() for ct, vm in parse_pairs(args.batch)]
    overrides = Config.job_overrides(logger, conf)
    if overrides:
        jobs = []
        base = vars(args)
        for ov in overrides:
            ns = argparse.Namespace(**{**base, **ov})
            jobs.append(ConversionJob.from_args(ns).validate())
        seen_ct = [j.ctid for j in jobs]
        seen_vm = [j.vmid for j in jobs]
        if len(set(seen_ct)) != len(seen_ct) or len(set(seen_vm)) != len(seen_vm):
            raise ConfigError("Config jobs repeat a container or VM ID")
        return jobs
    if args.ctid is None or args.vmid is None:
        raise ConfigError(
            "Container ID and VM ID are required.",
            hint="Pass -c <CTID> -v <VMID>, --batch PAIRS, or a config with a jobs: list.",
        )
    return [ConversionJob.from_args(args).validate()]
