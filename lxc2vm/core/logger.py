from __future__ import annotations
import datetime as _dt
import logging
from typing import Any, List, MutableMapping, Optional, Tuple

from pathlib import Path
# Optional: colors
try:
    from termcolor import colored as _colored  # type: ignore
except Exception:  # pragma: no cover
    _colored = None

DEFAULT_LOG_FILE = "/var/log/lxc-to-vm.log"

_LEVEL_EMOJI = {
    "DEBUG": "🔍",
    "INFO": "✅",
    "WARNING": "⚠️",
    "ERROR": "💥",
    "CRITICAL": "🧨",
}
_LEVEL_COLOR = {
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}
def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None) -> str:
    """Colorize text if termcolor is available."""
    if _colored is None or not color:
        return text
    try:
        return _colored(text, color=color, attrs=attrs or [])
    except Exception:
        return text
class EmojiFormatter(logging.Formatter):
    def __init__(self, *, color: bool = True):
        super().__init__()
        self.color = color
    def format(self, record: logging.LogRecord) -> str:
        ts = _dt.datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        emoji = _LEVEL_EMOJI.get(record.levelname, "•")
        lvl = record.levelname
        msg = record.getMessage()
        if self.color and _colored is not None:
            lvl = c(lvl, _LEVEL_COLOR.get(record.levelname))
            if record.levelno >= logging.WARNING:
                msg = c(msg, _LEVEL_COLOR.get(record.levelname), attrs=["bold"])
        return f"{ts} {emoji} {lvl:<8} {msg}"
class FileFormatter(logging.Formatter):
    """Plain, date-stamped lines for the shared append-only log."""
    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-8s [%(threadName)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S")
class JobLogAdapter(logging.LoggerAdapter):
    """Tags every line with the job's ct→vm pair so interleaved batch logs stay readable."""
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[ct{self.extra['ctid']}→vm{self.extra['vmid']}] {msg}", kwargs
def job_logger(logger: logging.Logger, ctid: int, vmid: int) -> JobLogAdapter:
    return JobLogAdapter(logger, {"ctid": ctid, "vmid": vmid})
class Log:
    @staticmethod
    def setup(verbose: int, log_file: Optional[str]) -> logging.Logger:
        logger = logging.getLogger("lxc2vm")
        logger.handlers.clear()
        logger.propagate = False
        level = logging.DEBUG if verbose >= 2 else logging.INFO
        logger.setLevel(logging.DEBUG)
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(EmojiFormatter())
        logger.addHandler(sh)
        if log_file:
            fp = Path(log_file).expanduser().resolve()
            try:
                fp.parent.mkdir(parents=True, exist_ok=True)
                # FileHandler serializes emit() under its own lock; append mode keeps
                # runs from concurrent jobs and earlier invocations.
                fh = logging.FileHandler(fp, mode="a", encoding="utf-8")
            except OSError as e:
                logger.warning(f"Cannot open log file {fp}: {e}")
            else:
                fh.setLevel(logging.DEBUG)
                fh.setFormatter(FileFormatter())
                logger.addHandler(fh)
        logger.debug("Logger initialized")
        return logger
    @staticmethod
    def log_path(logger: logging.Logger) -> Optional[str]:
        for h in logger.handlers:
            if isinstance(h, logging.FileHandler):
                return h.baseFilename
        return None
