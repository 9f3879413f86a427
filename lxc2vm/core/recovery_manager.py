from __future__ import annotations
import json
import logging
import os
import tempfile
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils import U

DEFAULT_STATE_DIR = Path("/var/lib/lxc2vm")


@dataclass
class ResumeState:
    ctid: int
    vmid: int
    stage: str
    timestamp: str
    workspace_path: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def job_key(self) -> str:
        return f"ct{self.ctid}-vm{self.vmid}"


class RecoveryManager:
    """
    Resume records keyed by (ctid, vmid), one JSON file each under
    <state_dir>/resume/. Only the copy stage writes them.
    """
    def __init__(self, logger: logging.Logger, state_dir: Path = DEFAULT_STATE_DIR):
        self.logger = logger
        self.workdir = Path(state_dir) / "resume"
        U.ensure_dir(self.workdir)
    def _path(self, ctid: int, vmid: int) -> Path:
        return self.workdir / f"ct{ctid}-vm{vmid}.json"
    def save(self, ctid: int, vmid: int, stage: str, workspace_path: Path, data: Optional[Dict[str, Any]] = None) -> ResumeState:
        st = ResumeState(
            ctid=ctid,
            vmid=vmid,
            stage=stage,
            timestamp=U.now_ts(),
            workspace_path=str(workspace_path),
            data=data or {},
        )
        path = self._path(ctid, vmid)
        # write-then-rename so a crash mid-write never leaves half a record
        fd, tmp = tempfile.mkstemp(dir=str(self.workdir), prefix=".resume-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(asdict(st), indent=2))
        os.replace(tmp, path)
        self.logger.info(f"Resume state saved: {path} (stage={stage})")
        return st
    def load(self, ctid: int, vmid: int) -> Optional[ResumeState]:
        path = self._path(ctid, vmid)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return ResumeState(**raw)
        except (ValueError, TypeError) as e:
            self.logger.warning(f"Ignoring unreadable resume state {path}: {e}")
            return None
    def exists(self, ctid: int, vmid: int) -> bool:
        return self._path(ctid, vmid).exists()
    def clear(self, ctid: int, vmid: int) -> None:
        path = self._path(ctid, vmid)
        if path.exists():
            U.safe_unlink(path)
            self.logger.debug(f"Resume state cleared: {path}")
    def list_all(self) -> List[ResumeState]:
        states = []
        for p in sorted(self.workdir.glob("ct*-vm*.json")):
            try:
                states.append(ResumeState(**json.loads(p.read_text(encoding="utf-8"))))
            except (ValueError, TypeError):
                continue
        return states
