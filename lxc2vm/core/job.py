# lxc2vm/core/job.py
from __future__ import annotations

import argparse
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigError, ExitCode

DISK_FORMATS = ("qcow2", "raw", "vmdk")
FIRMWARES = ("seabios", "ovmf")
DEFAULT_BRIDGE = "vmbr0"
DEFAULT_HEADROOM_GB = 1
_BRIDGE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class Stage(str, Enum):
    INIT = "init"
    SNAPSHOT = "snapshot"
    SHRINK = "shrink"
    WORKSPACE = "workspace"
    PROVISION = "provision"
    MIGRATE = "migrate"
    INJECT = "inject"
    VM_CREATE = "vm_create"
    VALIDATE = "validate"
    LIVE_CHECK = "live_check"
    REMEDIATE = "remediate"
    EXPORT = "export"
    TEMPLATE = "template"
    DESTROY_SOURCE = "destroy_source"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversionJob:
    """
    One ct→vm conversion request. Frozen once validated; every component
    receives it explicitly instead of reading process-wide state.
    """
    ctid: int
    vmid: int
    storage: str
    disk_size_gb: Optional[int] = None
    disk_format: str = "qcow2"
    firmware: str = "seabios"
    bridge: str = DEFAULT_BRIDGE
    temp_dir: Optional[Path] = None
    keep_network: bool = False
    shrink: bool = False
    headroom_gb: int = DEFAULT_HEADROOM_GB
    snapshot: bool = False
    rollback: bool = False
    destroy_source: bool = False
    resume: bool = False
    start: bool = False
    as_template: bool = False
    export_path: Optional[Path] = None
    dry_run: bool = False

    @property
    def uefi(self) -> bool:
        return self.firmware == "ovmf"

    @property
    def key(self) -> str:
        return f"ct{self.ctid}-vm{self.vmid}"

    def validate(self) -> "ConversionJob":
        if self.ctid <= 0:
            raise ConfigError(f"Container ID must be a positive integer, got: {self.ctid!r}")
        if self.vmid <= 0:
            raise ConfigError(f"VM ID must be a positive integer, got: {self.vmid!r}")
        if not self.storage:
            raise ConfigError("Target storage is required", hint="Pass -s/--storage (e.g. local-lvm).")
        if self.disk_size_gb is not None and self.disk_size_gb < 1:
            raise ConfigError("Disk size must be at least 1 GB.")
        if self.disk_size_gb is None and not self.shrink:
            raise ConfigError(
                "Disk size is not set.",
                hint="Provide -d <GB> or use --shrink to auto-calculate.",
            )
        if self.disk_format not in DISK_FORMATS:
            raise ConfigError(f"Unsupported disk format: {self.disk_format!r} (use qcow2, raw, or vmdk)")
        if self.firmware not in FIRMWARES:
            raise ConfigError(f"Unsupported BIOS type: {self.firmware!r} (use seabios or ovmf)")
        if not _BRIDGE_RE.match(self.bridge or ""):
            raise ConfigError(f"Invalid bridge name: {self.bridge!r}")
        if self.headroom_gb < 1:
            raise ConfigError("Headroom must be at least 1 GB.")
        if self.rollback and not self.snapshot:
            raise ConfigError("--rollback-on-failure requires --snapshot")
        if self.destroy_source and self.as_template:
            raise ConfigError("--destroy-source and --as-template are mutually exclusive")
        return self

    @classmethod
    def from_args(cls, args: argparse.Namespace, ctid: Optional[int] = None, vmid: Optional[int] = None) -> "ConversionJob":
        def _int(v: Any, what: str) -> int:
            try:
                return int(v)
            except (TypeError, ValueError):
                raise ConfigError(f"{what} must be a positive integer, got: {v!r}")

        disk = getattr(args, "disk_size", None)
        return cls(
            ctid=_int(ctid if ctid is not None else getattr(args, "ctid", None), "Container ID"),
            vmid=_int(vmid if vmid is not None else getattr(args, "vmid", None), "VM ID"),
            storage=getattr(args, "storage", None) or "",
            disk_size_gb=_int(disk, "Disk size") if disk not in (None, "") else None,
            disk_format=getattr(args, "format", "qcow2"),
            firmware=getattr(args, "bios", "seabios"),
            bridge=getattr(args, "bridge", DEFAULT_BRIDGE),
            temp_dir=Path(args.temp_dir).expanduser() if getattr(args, "temp_dir", None) else None,
            keep_network=bool(getattr(args, "keep_network", False)),
            shrink=bool(getattr(args, "shrink", False)),
            headroom_gb=_int(getattr(args, "headroom", DEFAULT_HEADROOM_GB), "Headroom"),
            snapshot=bool(getattr(args, "snapshot", False)),
            rollback=bool(getattr(args, "rollback_on_failure", False)),
            destroy_source=bool(getattr(args, "destroy_source", False)),
            resume=bool(getattr(args, "resume", False)),
            start=bool(getattr(args, "start", False)),
            as_template=bool(getattr(args, "as_template", False)),
            export_path=Path(args.export).expanduser() if getattr(args, "export", None) else None,
            dry_run=bool(getattr(args, "dry_run", False)),
        )


@dataclass
class JobResult:
    ctid: int
    vmid: int
    ok: bool = False
    stage: Stage = Stage.INIT
    failed_stage: Optional[Stage] = None
    exit_code: int = ExitCode.OK
    reason: Optional[str] = None
    hint: Optional[str] = None
    disk_size_gb: Optional[int] = None
    distro: Optional[str] = None
    health: Optional[Dict[str, Any]] = None
    shrink: Optional[Dict[str, Any]] = None
    resume_saved: bool = False
    elapsed_s: float = 0.0
    notes: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["stage"] = self.stage.value
        d["failed_stage"] = self.failed_stage.value if self.failed_stage else None
        return d
