from __future__ import annotations
import json
import logging
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional

from ..core.exceptions import ConversionError
from ..core.utils import U

_EXT_FORMAT = {".qcow2": "qcow2", ".raw": "raw", ".img": "raw", ".vmdk": "vmdk"}


def export_format(dst: Path, default: str) -> str:
    return _EXT_FORMAT.get(dst.suffix.lower(), default)


class DiskExporter:
    """Copies the finished VM disk to a local file with qemu-img convert."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _virtual_size(self, src: str) -> int:
        try:
            info = U.run_cmd(self.logger, ["qemu-img", "info", "--output=json", src], capture=True)
            return int(json.loads(info.stdout).get("virtual-size", 0))
        except subprocess.CalledProcessError as e:
            self.logger.warning(f"Failed to get image info: return code {e.returncode}, stderr: {e.stderr}")
        except (ValueError, TypeError) as e:
            self.logger.warning(f"Failed to parse image info JSON: {e}")
        return 0

    def export(
        self,
        src: str,
        dst: Path,
        *,
        out_format: str,
        compress: bool = False,
        force_share: bool = False,
    ) -> Path:
        if U.which("qemu-img") is None:
            raise ConversionError("qemu-img not found.", hint="Install qemu-utils.")
        if dst.is_dir():
            dst = dst / f"{Path(src).stem}.{out_format}"
        U.ensure_dir(dst.parent)
        total = self._virtual_size(src)
        cmd = ["qemu-img", "convert", "-p", "-O", out_format]
        if force_share:
            # source is attached to a running VM
            cmd.append("-U")
        if compress and out_format == "qcow2":
            cmd.append("-c")
        cmd += [src, str(dst)]
        U.banner(self.logger, f"Export to {out_format.upper()}")
        self.logger.info(f"Exporting: {src} -> {dst} ({U.human_bytes(total)})")
        self.logger.debug(f"Executing: {' '.join(cmd)}")
        start = time.time()
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, universal_newlines=True)
        assert process.stdout is not None
        assert process.stderr is not None
        stderr_lines: List[str] = []

        def read_stderr() -> None:
            for line in process.stderr:
                stderr_lines.append(line.strip())

        err_thread = threading.Thread(target=read_stderr, daemon=True)
        err_thread.start()
        with U.progress() as progress:
            task = progress.add_task("Exporting", total=100)
            for line in process.stdout:
                m = re.search(r"\((\d+\.\d+)/100%\)", line)
                if m:
                    progress.update(task, completed=float(m.group(1)))
            process.wait()
            err_thread.join(timeout=5)
        if process.returncode != 0:
            self.logger.error("stderr output:\n" + "\n".join(stderr_lines))
            raise ConversionError(
                f"Export failed with exit code {process.returncode}",
                stderr="\n".join(stderr_lines[-10:]),
            )
        duration = time.time() - start
        if total and duration > 0:
            self.logger.info(f"Export completed in {duration:.2f}s at {total / duration / 1024 / 1024:.2f} MB/s")
        else:
            self.logger.info(f"Export completed in {duration:.2f}s")
        self.validate(dst)
        return dst

    def validate(self, path: Path) -> Optional[bool]:
        cp = U.run_cmd(self.logger, ["qemu-img", "check", str(path)], check=False, capture=True)
        if cp.returncode == 0:
            self.logger.info("Image validation: OK (qemu-img check)")
            return True
        # raw images have nothing to check and report 63
        if cp.returncode == 63:
            return None
        self.logger.warning("Image validation: WARNING (qemu-img check reported issues)")
        self.logger.debug("stdout:\n" + (cp.stdout or ""))
        return False
