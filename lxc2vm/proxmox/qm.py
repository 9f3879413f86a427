from __future__ import annotations
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConversionError
from ..core.utils import U
from .parsers import parse_guest_exec, parse_json, parse_kv, parse_status


class VMClient:
    """VM-control interface backed by `qm`."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _qm(self, *args: str, check: bool = True, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        return U.run_cmd(self.logger, ["qm", *args], capture=True, check=check, timeout=timeout)

    def exists(self, vmid: int) -> bool:
        return self._qm("config", str(vmid), check=False).returncode == 0

    def config(self, vmid: int) -> Dict[str, str]:
        res = self._qm("config", str(vmid), check=False)
        if res.returncode != 0:
            return {}
        return parse_kv(res.stdout, "qm config")

    def create(self, vmid: int, **opts: Any) -> None:
        args = ["create", str(vmid)]
        for k, v in opts.items():
            args += [f"--{k}", str(v)]
        self._qm(*args)

    def set(self, vmid: int, **opts: Any) -> None:
        args = ["set", str(vmid)]
        for k, v in opts.items():
            args += [f"--{k}", str(v)]
        self._qm(*args)

    def importdisk(self, vmid: int, image: Path, storage: str, fmt: str) -> str:
        res = self._qm("importdisk", str(vmid), str(image), storage, "--format", fmt)
        return res.stdout + res.stderr

    def resize(self, vmid: int, disk: str, size: str) -> bool:
        return self._qm("resize", str(vmid), disk, size, check=False).returncode == 0

    def status(self, vmid: int) -> str:
        return parse_status(self._qm("status", str(vmid)).stdout, "qm status")

    def start(self, vmid: int) -> None:
        self._qm("start", str(vmid))

    def stop(self, vmid: int) -> None:
        self._qm("stop", str(vmid))

    def template(self, vmid: int) -> None:
        self._qm("template", str(vmid))

    def agent_ping(self, vmid: int) -> bool:
        try:
            return self._qm("agent", str(vmid), "ping", check=False, timeout=15).returncode == 0
        except subprocess.TimeoutExpired:
            return False

    def agent(self, vmid: int, command: str) -> Any:
        try:
            res = self._qm("agent", str(vmid), command, check=False, timeout=30)
        except subprocess.TimeoutExpired as e:
            raise ConversionError(f"qm agent {command} timed out after {e.timeout}s", cause=e)
        if res.returncode != 0:
            return None
        return parse_json(res.stdout, f"qm agent {command}")

    def network_interfaces(self, vmid: int) -> Any:
        return self.agent(vmid, "network-get-interfaces")

    def osinfo(self, vmid: int) -> Dict[str, Any]:
        data = self.agent(vmid, "get-osinfo")
        return data if isinstance(data, dict) else {}

    def guest_exec(self, vmid: int, argv: List[str]) -> Dict[str, Any]:
        try:
            res = self._qm("guest", "exec", str(vmid), "--", *argv, timeout=60)
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"qm guest exec failed: {' '.join(argv)}", cause=e)
        except subprocess.TimeoutExpired as e:
            raise ConversionError(f"qm guest exec timed out after {e.timeout}s: {' '.join(argv)}", cause=e)
        return parse_guest_exec(res.stdout)
