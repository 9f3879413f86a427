# lxc2vm/converters/workspace.py
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..core.exceptions import ConfigError, InsufficientSpace
from ..core.utils import GiB, U

DEFAULT_WORK_BASE = Path("/var/lib/vz/dump")
EXCLUDED_PREFIXES = ("/boot", "/snap", "/run", "/dev", "/proc", "/sys", "/tmp")
WORKSPACE_PREFIX = "lxc2vm-"


@dataclass(frozen=True)
class MountCandidate:
    path: str
    avail_bytes: int


Chooser = Callable[[List[MountCandidate], int], str]


def required_bytes(disk_gb: int) -> int:
    """The image plus 1 GiB for mount points, partial files and logs."""
    return (disk_gb + 1) * GiB


def parse_df(text: str) -> List[MountCandidate]:
    """`df -B1 --output=avail,target` -> candidates (header and junk rows skipped)."""
    out = []
    for ln in text.splitlines()[1:]:
        parts = ln.split(None, 1)
        if len(parts) != 2 or not parts[0].isdigit():
            continue
        out.append(MountCandidate(path=parts[1].strip(), avail_bytes=int(parts[0])))
    return out


def _excluded(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in EXCLUDED_PREFIXES)


def eligible(candidates: Sequence[MountCandidate], required: int) -> List[MountCandidate]:
    """Filtered and ordered by free space (desc) then path, so equal inputs give equal output."""
    seen = set()
    keep = []
    for cand in candidates:
        if _excluded(cand.path) or cand.path in seen or cand.avail_bytes < required:
            continue
        seen.add(cand.path)
        keep.append(cand)
    return sorted(keep, key=lambda c: (-c.avail_bytes, c.path))


def resolve_choice(choice: str, candidates: Sequence[MountCandidate]) -> str:
    """A 1-based menu index or a literal path; empty means the first (largest) entry."""
    choice = (choice or "").strip()
    if not choice:
        return candidates[0].path
    if choice.isdigit():
        idx = int(choice)
        if 1 <= idx <= len(candidates):
            return candidates[idx - 1].path
        raise ConfigError(f"Workspace choice {idx} is out of range 1-{len(candidates)}")
    return choice


def free_bytes(path: Path) -> int:
    st = os.statvfs(str(path))
    return st.f_bavail * st.f_frsize


class WorkspaceSelector:
    """
    Picks the directory that will hold the temporary disk image.

    Order: an explicit --temp-dir (fatal when too small), then the default
    dump directory, then any mounted filesystem with room. Several eligible
    mounts are resolved by a pre-seeded choice or the chooser callback.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        default_base: Path = DEFAULT_WORK_BASE,
        mounts: Optional[Callable[[], List[MountCandidate]]] = None,
        space: Callable[[Path], int] = free_bytes,
        chooser: Optional[Chooser] = None,
        choice: Optional[str] = None,
    ):
        self.logger = logger
        self.default_base = Path(default_base)
        self.mounts = mounts or self._df_mounts
        self.space = space
        self.chooser = chooser
        self.choice = choice

    def _df_mounts(self) -> List[MountCandidate]:
        res = U.run_cmd(self.logger, ["df", "-B1", "--output=avail,target"], capture=True, check=False)
        return parse_df(res.stdout or "")

    def _fits(self, path: Path, required: int) -> Optional[int]:
        try:
            U.ensure_dir(path)
            avail = self.space(path)
        except OSError as e:
            self.logger.debug(f"Workspace candidate {path} unusable: {e}")
            return None
        return avail if avail >= required else None

    def select(self, disk_gb: int, preferred: Optional[Path] = None) -> Path:
        required = required_bytes(disk_gb)
        if preferred is not None:
            preferred = Path(preferred)
            try:
                U.ensure_dir(preferred)
            except OSError as e:
                raise ConfigError(f"Cannot create directory: {preferred}", cause_detail=str(e))
            avail = self.space(preferred)
            if avail < required:
                raise InsufficientSpace(
                    f"Insufficient space in {preferred}: {U.human_bytes(avail)} available, {U.human_bytes(required)} required.",
                    hint="Pick another --temp-dir or free up space.",
                )
            self.logger.info(f"Using workspace: {preferred} ({U.human_bytes(avail)} available)")
            return preferred

        avail = self._fits(self.default_base, required)
        if avail is not None:
            self.logger.info(f"Using workspace: {self.default_base} ({U.human_bytes(avail)} available)")
            return self.default_base

        self.logger.warning(
            f"{self.default_base} lacks {U.human_bytes(required)} of free space; scanning other mount points..."
        )
        candidates = eligible(self.mounts(), required)
        if not candidates:
            raise InsufficientSpace(
                f"No mount point has enough free space ({U.human_bytes(required)}).",
                hint="Free up disk space, attach storage, or pass --temp-dir.",
            )
        if len(candidates) == 1:
            chosen = candidates[0]
            self.logger.info(f"Auto-selecting workspace: {chosen.path} ({U.human_bytes(chosen.avail_bytes)} free)")
            return Path(chosen.path)

        if self.choice is not None:
            picked = resolve_choice(self.choice, candidates)
        elif self.chooser is not None:
            picked = resolve_choice(self.chooser(candidates, required), candidates)
        else:
            raise ConfigError(
                f"{len(candidates)} mount points have enough space; cannot choose non-interactively.",
                hint="Pass --temp-dir <path>.",
                candidates=[c.path for c in candidates],
            )
        path = Path(picked)
        avail = self._fits(path, required)
        if avail is None:
            raise InsufficientSpace(f"'{path}' is insufficient: {U.human_bytes(required)} required.")
        self.logger.info(f"Using workspace: {path} ({U.human_bytes(avail)} available)")
        return path

    @staticmethod
    def job_dir(base: Path, ctid: int) -> Path:
        return Path(base) / f"{WORKSPACE_PREFIX}{ctid}"

    def prepare(self, base: Path, ctid: int) -> Path:
        """Fresh per-job directory; a stale one from an earlier run is discarded."""
        work = self.job_dir(base, ctid)
        if work.exists():
            self.logger.debug(f"Removing stale workspace {work}")
            shutil.rmtree(work)
        U.ensure_dir(work / "mnt")
        self.logger.info(f"Working directory: {work}")
        return work

    def remove(self, work: Path) -> None:
        if work.exists() and work.name.startswith(WORKSPACE_PREFIX):
            shutil.rmtree(work, ignore_errors=True)
            self.logger.debug(f"Removed workspace {work}")
