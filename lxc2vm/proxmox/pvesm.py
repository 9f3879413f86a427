from __future__ import annotations
import logging
import subprocess
from typing import List, Optional

from ..core.exceptions import ConfigError, NotFoundError
from ..core.utils import U
from .parsers import StorageStatus, parse_pvesm_status


class StorageClient:
    """Storage-management interface backed by `pvesm`."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def status(self) -> List[StorageStatus]:
        res = U.run_cmd(self.logger, ["pvesm", "status"], capture=True)
        return parse_pvesm_status(res.stdout)

    def get(self, name: str) -> StorageStatus:
        entries = self.status()
        for st in entries:
            if st.name == name:
                return st
        available = ", ".join(s.name for s in entries) or "none"
        raise ConfigError(f"Storage '{name}' not found. Available: {available}")

    def storage_type(self, name: str) -> str:
        return self.get(name).type

    def path(self, volume: str) -> str:
        try:
            res = U.run_cmd(self.logger, ["pvesm", "path", volume], capture=True)
        except subprocess.CalledProcessError as e:
            raise NotFoundError(f"Could not resolve volume {volume}", hint="Check the volume with: pvesm list <storage>")
        out: Optional[str] = res.stdout.strip().splitlines()[-1] if res.stdout.strip() else None
        if not out or not out.startswith("/"):
            raise NotFoundError(f"pvesm path returned no usable path for {volume}")
        return out
