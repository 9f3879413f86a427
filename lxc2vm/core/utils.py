from __future__ import annotations
import datetime as _dt
import json
import logging
import math
import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from .exceptions import PermissionDenied

GiB = 1024 ** 3
MiB = 1024 ** 2


class U:
    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)
    @staticmethod
    def which(prog: str) -> Optional[str]:
        from shutil import which as _which
        return _which(prog)
    @staticmethod
    def now_ts() -> str:
        return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except Exception:
            return repr(obj)
    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
            if x < 1024 or unit == "TiB":
                return f"{x:.2f} {unit}"
            x /= 1024
        return f"{n} B"
    @staticmethod
    def ceil_gib(n_bytes: int) -> int:
        return int(math.ceil(n_bytes / GiB))
    @staticmethod
    def progress() -> Progress:
        # rich allows one live display per console; batch worker threads stay quiet
        quiet = threading.current_thread() is not threading.main_thread()
        return Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            disable=quiet,
        )
    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        line = "─" * max(10, len(title) + 2)
        logger.info(line)
        logger.info(f" {title}")
        logger.info(line)
    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        pretty = " ".join(shlex.quote(x) for x in cmd)
        logger.debug(f"Running: {pretty}")
        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
                input=input_text,
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"Command failed: {pretty}\nstdout: {e.stdout}\nstderr: {e.stderr}")
            raise
        except Exception as e:
            logger.error(f"Command error: {pretty} {e}")
            raise
    @staticmethod
    def retry(
        logger: logging.Logger,
        label: str,
        fn: Callable[[], Any],
        *,
        attempts: int = 5,
        delay_s: float = 3.0,
    ) -> bool:
        """Call fn until it stops raising; returns False once attempts run out."""
        for attempt in range(1, attempts + 1):
            try:
                fn()
                return True
            except Exception as e:
                logger.warning(f"{label} attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    time.sleep(delay_s)
        return False
    @staticmethod
    def require_root(logger: logging.Logger) -> None:
        if os.geteuid() != 0:
            logger.error("This operation requires root. Re-run with sudo.")
            raise PermissionDenied("This operation requires root", hint="Re-run with sudo.")
    @staticmethod
    def safe_unlink(p: Path) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            pass
    @staticmethod
    def to_text(x: Any) -> str:
        if x is None:
            return ""
        if isinstance(x, bytes):
            return x.decode("utf-8", "replace")
        return str(x)
    @staticmethod
    def human_to_bytes(s: str) -> int:
        s = s.upper().rstrip('B')
        suffixes = {'K': 1024, 'M': 1024**2, 'G': 1024**3, 'T': 1024**4}
        for suffix, multiplier in suffixes.items():
            if s.endswith(suffix):
                return int(float(s[:-len(suffix)]) * multiplier)
        return int(float(s))
