# lxc2vm/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional


class ExitCode(IntEnum):
    OK = 0
    GENERIC = 1
    BAD_INPUT = 2
    NOT_FOUND = 3
    INSUFFICIENT_SPACE = 4
    PERMISSION_DENIED = 5
    MIGRATION_FAILED = 6
    CONVERSION_FAILED = 7
    INTERRUPTED = 130


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


@dataclass(eq=False)
class Lxc2VmError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - an optional remedy hint shown next to the summary line
    """
    code: int = ExitCode.GENERIC
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None
    hint: Optional[str] = None

    def __post_init__(self) -> None:
        self.code = _safe_int(self.code, default=1)
        self.msg = _one_line(self.msg)
        super().__init__(self.msg)

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        base = self.msg or self.__class__.__name__

        parts = [base]

        if include_context and self.context:
            kv = ", ".join(f"{k}={self.context[k]!r}" for k in sorted(self.context.keys()))
            parts.append(f"[{kv}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "hint": self.hint,
            "context": self.context or {},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Lxc2VmError):
    """
    User-facing fatal error (exit code should be honored by top-level main()).
    """
    pass


class ConfigError(Fatal):
    """Bad IDs, unknown formats, missing storage. Raised before any mutation."""

    def __init__(self, msg: str, *, hint: Optional[str] = None, **context: Any):
        super().__init__(code=ExitCode.BAD_INPUT, msg=msg, context=context or None, hint=hint)


class NotFoundError(Fatal):
    def __init__(self, msg: str, *, hint: Optional[str] = None, **context: Any):
        super().__init__(code=ExitCode.NOT_FOUND, msg=msg, context=context or None, hint=hint)


class InsufficientSpace(Fatal):
    def __init__(self, msg: str, *, hint: Optional[str] = None, **context: Any):
        super().__init__(code=ExitCode.INSUFFICIENT_SPACE, msg=msg, context=context or None, hint=hint)


class PermissionDenied(Fatal):
    def __init__(self, msg: str, *, hint: Optional[str] = None, **context: Any):
        super().__init__(code=ExitCode.PERMISSION_DENIED, msg=msg, context=context or None, hint=hint)


class MigrationError(Fatal):
    """Filesystem copy failed. The only failure class that leaves resume state behind."""

    def __init__(
        self,
        msg: str,
        *,
        cause: Optional[BaseException] = None,
        hint: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(code=ExitCode.MIGRATION_FAILED, msg=msg, cause=cause, context=context or None, hint=hint)


class ConversionError(Fatal):
    """External tool failure anywhere outside the copy stage."""

    def __init__(
        self,
        msg: str,
        *,
        cause: Optional[BaseException] = None,
        hint: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(code=ExitCode.CONVERSION_FAILED, msg=msg, cause=cause, context=context or None, hint=hint)


class UnparseableOutput(ConversionError):
    """A tool answered, but not in a shape we can trust."""

    def __init__(self, tool: str, output: str, *, expected: str = ""):
        super().__init__(
            f"Unparseable output from {tool}" + (f" (expected {expected})" if expected else ""),
            hint=f"Run '{tool}' manually and check its output format.",
            tool=tool,
            output=_one_line(output, limit=200),
        )


class Cancelled(Fatal):
    def __init__(self, msg: str = "Interrupted by user"):
        super().__init__(code=ExitCode.INTERRUPTED, msg=msg, hint="Re-run with --resume if the copy stage was interrupted.")


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message (+ hint)
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Lxc2VmError):
        line = e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )
        if e.hint:
            line += f" -> {e.hint}"
        return line

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
