from __future__ import annotations
import logging
import os
import re
import stat
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..core.exceptions import Cancelled, MigrationError, UnparseableOutput
from ..core.utils import U
from ..proxmox.parsers import DEFAULT_ID_RANGE

RSYNC_EXCLUDES = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/tmp/*",
    "/run/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
)
PARTIAL_DIR = ".lxc2vm-partial"

_PCT_RE = re.compile(r"\s(\d{1,3})%\s")


def measure_used(logger: logging.Logger, root: Path) -> int:
    """Bytes in root, skipping the same pseudo filesystems the copy skips."""
    cmd = ["du", "-sb"] + [f"--exclude={x.lstrip('/')}" for x in RSYNC_EXCLUDES] + [f"{root}/"]
    res = U.run_cmd(logger, cmd, capture=True, check=False)
    first = (res.stdout or "").strip().split()
    if not first or not first[0].isdigit():
        raise UnparseableOutput("du -sb", (res.stdout or "") + (res.stderr or ""), expected="'<bytes>\\t<path>'")
    return int(first[0])


def rsync_command(src: Path, dst: Path) -> List[str]:
    cmd = [
        "rsync",
        "-axHAX",
        "--numeric-ids",
        "--partial",
        f"--partial-dir={PARTIAL_DIR}",
        "--info=progress2",
        "--no-inc-recursive",
    ]
    cmd += [f"--exclude={x}" for x in RSYNC_EXCLUDES]
    cmd += [f"{src}/", f"{dst}/"]
    return cmd


def _shift(value: int, base: Optional[int], span: int) -> int:
    if base is None or base == 0:
        return value
    if base <= value < base + span:
        return value - base
    return value


class FilesystemMigrator:
    def __init__(self, logger: logging.Logger, *, cancel: Optional[threading.Event] = None):
        self.logger = logger
        self.cancel = cancel

    def copy(self, src: Path, dst: Path, *, total_bytes: int = 0) -> None:
        """
        rsync src/ into dst/. Interrupted copies leave their partial files in
        PARTIAL_DIR, so running copy() again against the same dst resumes.
        """
        cmd = rsync_command(src, dst)
        U.banner(self.logger, "Copy container filesystem")
        self.logger.info(f"Copying {src} -> {dst} ({U.human_bytes(total_bytes)})")
        self.logger.debug(f"Executing: {' '.join(cmd)}")
        start = time.time()
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
            )
        except OSError as e:
            raise MigrationError("Failed to start rsync", cause=e)
        stderr_lines: List[str] = []

        def read_stderr() -> None:
            for line in process.stderr:
                stderr_lines.append(line.rstrip())

        err_thread = threading.Thread(target=read_stderr, daemon=True)
        err_thread.start()
        progress = U.progress()
        cancelled = False
        with progress:
            task = progress.add_task("Copying", total=100)
            # progress2 redraws with \r; universal newlines splits on it
            for line in process.stdout:
                if self.cancel is not None and self.cancel.is_set():
                    process.terminate()
                    cancelled = True
                    break
                m = _PCT_RE.search(f" {line} ")
                if m:
                    progress.update(task, completed=int(m.group(1)))
            process.wait()
            err_thread.join(timeout=5)
        if cancelled:
            raise Cancelled("Copy interrupted")
        if process.returncode != 0:
            tail = "\n".join(stderr_lines[-20:])
            self.logger.error(f"rsync failed with exit code {process.returncode}\n{tail}")
            raise MigrationError(
                f"rsync failed with exit code {process.returncode}",
                hint="Re-run with --resume to continue the copy.",
                rsync_exit=process.returncode,
                stderr=tail[-400:],
            )
        duration = time.time() - start
        if total_bytes and duration > 0:
            self.logger.info(f"Copy completed in {duration:.1f}s ({total_bytes / duration / 1024 / 1024:.1f} MB/s)")
        else:
            self.logger.info(f"Copy completed in {duration:.1f}s")

    def unshift_ids(
        self,
        root: Path,
        uid_base: Optional[int],
        gid_base: Optional[int],
        *,
        span: int = DEFAULT_ID_RANGE,
        chown: Callable[[str, int, int], None] = os.lchown,
    ) -> int:
        """
        Map host-side ids of an unprivileged container (base..base+span) back
        to 0-based ids. Metadata only; file contents are not touched.
        """
        if not uid_base and not gid_base:
            return 0
        self.logger.info(f"Remapping ownership from host range (uid base {uid_base}, gid base {gid_base})...")
        changed = 0
        paths = [str(root)]
        for dirpath, dirnames, filenames in os.walk(root):
            paths.extend(os.path.join(dirpath, n) for n in dirnames + filenames)
            for path in paths:
                try:
                    st = os.lstat(path)
                except FileNotFoundError:
                    continue
                uid = _shift(st.st_uid, uid_base, span)
                gid = _shift(st.st_gid, gid_base, span)
                if (uid, gid) == (st.st_uid, st.st_gid):
                    continue
                chown(path, uid, gid)
                # chown clears setuid/setgid; put them back
                if not stat.S_ISLNK(st.st_mode) and st.st_mode & (stat.S_ISUID | stat.S_ISGID):
                    os.chmod(path, stat.S_IMODE(st.st_mode))
                changed += 1
            paths = []
        self.logger.info(f"Remapped ownership of {changed} entries")
        return changed

    def migrate(
        self,
        src: Path,
        dst: Path,
        *,
        total_bytes: int = 0,
        id_bases: Tuple[Optional[int], Optional[int]] = (None, None),
    ) -> None:
        self.copy(src, dst, total_bytes=total_bytes)
        self.unshift_ids(dst, id_bases[0], id_bases[1])
