from __future__ import annotations
import logging
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from ..core.exceptions import ConversionError, NotFoundError
from ..core.utils import U
from .parsers import ContainerConfig, parse_container_config, parse_mount_path, parse_pct_df, parse_status


class ContainerClient:
    """Container-control interface backed by the `pct` CLI."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _pct(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return U.run_cmd(self.logger, ["pct", *args], capture=True, check=check)

    def exists(self, ctid: int) -> bool:
        return self._pct("config", str(ctid), check=False).returncode == 0

    def config(self, ctid: int) -> ContainerConfig:
        res = self._pct("config", str(ctid), check=False)
        if res.returncode != 0:
            raise NotFoundError(f"Container {ctid} does not exist.", hint="Check the ID with: pct list")
        return parse_container_config(res.stdout)

    def status(self, ctid: int) -> str:
        return parse_status(self._pct("status", str(ctid)).stdout, "pct status")

    def stop(self, ctid: int) -> None:
        self.logger.warning(f"Container {ctid} is running. Stopping it for a consistent copy...")
        self._pct("stop", str(ctid))
        time.sleep(2)

    def start(self, ctid: int) -> None:
        self.logger.info(f"Starting container {ctid}...")
        self._pct("start", str(ctid))

    def mount(self, ctid: int) -> Path:
        try:
            res = self._pct("mount", str(ctid))
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"pct mount {ctid} failed", cause=e, hint=f"Try: pct unmount {ctid}")
        path = parse_mount_path(res.stdout + res.stderr)
        candidates: List[Path] = [Path(path)] if path else []
        candidates.append(Path(f"/var/lib/lxc/{ctid}/rootfs"))
        for cand in candidates:
            if cand.is_dir():
                return cand
        self.unmount(ctid)
        raise ConversionError(f"Could not locate rootfs for container {ctid}.")

    def unmount(self, ctid: int) -> None:
        self._pct("unmount", str(ctid), check=False)

    def set_rootfs_size(self, ctid: int, volume: str, size_gb: int) -> None:
        self._pct("set", str(ctid), "--rootfs", f"{volume},size={size_gb}G")

    def snapshot(self, ctid: int, name: str) -> None:
        self._pct("snapshot", str(ctid), name, "--description", "lxc2vm pre-conversion snapshot")

    def rollback(self, ctid: int, name: str) -> None:
        self._pct("rollback", str(ctid), name)

    def delete_snapshot(self, ctid: int, name: str) -> None:
        self._pct("delsnapshot", str(ctid), name)

    def destroy(self, ctid: int) -> None:
        self._pct("destroy", str(ctid), "--purge")

    def df_used(self, ctid: int) -> Optional[int]:
        res = self._pct("df", str(ctid), check=False)
        if res.returncode != 0:
            return None
        return parse_pct_df(res.stdout)
