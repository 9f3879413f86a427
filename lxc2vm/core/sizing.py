# lxc2vm/core/sizing.py
"""
Target-size arithmetic for shrinking a container root volume.

    target = ceil(used) + metadata_margin + headroom        (whole GiB)
    metadata_margin = ceil(max(5% of used, 512 MiB))

The filesystem's own minimum (resize2fs -P) wins when it is larger, and the
result never drops below MIN_SIZE_GB. The retry loop then walks upward from
the target in STEP_GB increments until a resize succeeds or MAX_ATTEMPTS is
exhausted.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from .exceptions import Fatal, ExitCode
from .utils import GiB, MiB, U

MIN_SIZE_GB = 2
STEP_GB = 2
MAX_ATTEMPTS = 5
METADATA_RATIO = 0.05
METADATA_FLOOR_BYTES = 512 * MiB
# partition table + ext4 journal/inode tables on the VM disk, on top of the shrunk volume
VM_DISK_OVERHEAD_GB = 3


class ShrinkFailed(Fatal):
    def __init__(self, msg: str, **context: Any):
        super().__init__(
            code=ExitCode.INSUFFICIENT_SPACE,
            msg=msg,
            context=context or None,
            hint="The container disk was left unchanged; pass an explicit -d <GB> instead of --shrink.",
        )


@dataclass
class ShrinkPlan:
    used_bytes: int
    metadata_margin_bytes: int
    headroom_bytes: int
    target_gb: int
    current_gb: int = 0
    attempt_count: int = 0
    filesystem_minimum_gb: Optional[int] = None
    final_gb: Optional[int] = None
    skipped: bool = False

    @property
    def savings_gb(self) -> int:
        if self.skipped or self.final_gb is None:
            return 0
        return max(0, self.current_gb - self.final_gb)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["savings_gb"] = self.savings_gb
        return d


class SizingEngine:
    def __init__(
        self,
        logger: logging.Logger,
        *,
        min_size_gb: int = MIN_SIZE_GB,
        step_gb: int = STEP_GB,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.logger = logger
        self.min_size_gb = min_size_gb
        self.step_gb = step_gb
        self.max_attempts = max_attempts

    @staticmethod
    def metadata_margin_gb(used_bytes: int) -> int:
        margin = max(int(used_bytes * METADATA_RATIO), METADATA_FLOOR_BYTES)
        return int(math.ceil(margin / GiB))

    def plan(
        self,
        used_bytes: int,
        headroom_gb: int,
        *,
        current_gb: int = 0,
        filesystem_minimum_gb: Optional[int] = None,
    ) -> ShrinkPlan:
        if used_bytes < 0:
            raise ValueError("used_bytes must be >= 0")
        used_gb = U.ceil_gib(used_bytes)
        margin_gb = self.metadata_margin_gb(used_bytes)
        target = used_gb + margin_gb + headroom_gb
        if filesystem_minimum_gb is not None and filesystem_minimum_gb > target:
            self.logger.info(f"Filesystem minimum ~{filesystem_minimum_gb}GB exceeds computed {target}GB; raising target")
            target = filesystem_minimum_gb
        target = max(target, self.min_size_gb)
        plan = ShrinkPlan(
            used_bytes=used_bytes,
            metadata_margin_bytes=margin_gb * GiB,
            headroom_bytes=headroom_gb * GiB,
            target_gb=target,
            current_gb=current_gb,
            filesystem_minimum_gb=filesystem_minimum_gb,
        )
        plan.skipped = bool(current_gb) and target >= current_gb
        self.logger.info(
            f"Shrink plan: used {U.human_bytes(used_bytes)} (~{used_gb}GB) + margin {margin_gb}GB "
            f"+ headroom {headroom_gb}GB -> {target}GB (current {current_gb or 'unknown'}GB)"
        )
        return plan

    def raise_to_minimum(self, plan: ShrinkPlan, filesystem_minimum_gb: Optional[int]) -> ShrinkPlan:
        """Apply a filesystem minimum learned after planning (it needs the volume mapped)."""
        if filesystem_minimum_gb is None:
            return plan
        plan.filesystem_minimum_gb = filesystem_minimum_gb
        if filesystem_minimum_gb > plan.target_gb:
            self.logger.info(f"Filesystem minimum ~{filesystem_minimum_gb}GB > target {plan.target_gb}GB; raising target")
            plan.target_gb = filesystem_minimum_gb
        plan.skipped = bool(plan.current_gb) and plan.target_gb >= plan.current_gb
        return plan

    def execute(self, plan: ShrinkPlan, resize: Callable[[int], None]) -> int:
        """
        Call resize(size_gb) starting at plan.target_gb, growing by step_gb after
        each failure. resize must leave the volume untouched when it raises.
        """
        if plan.skipped:
            self.logger.info(f"Disk is already close to optimal size ({plan.current_gb}GB). No shrink needed.")
            plan.final_gb = plan.current_gb
            return plan.current_gb

        size = plan.target_gb
        last_err: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            plan.attempt_count = attempt
            if plan.current_gb and size >= plan.current_gb:
                self.logger.info(f"Retry size {size}GB reached current size {plan.current_gb}GB; nothing left to shrink")
                plan.skipped = True
                plan.final_gb = plan.current_gb
                return plan.current_gb
            self.logger.info(f"Resizing filesystem to {size}GB (attempt {attempt}/{self.max_attempts})...")
            try:
                resize(size)
            except Exception as e:
                last_err = e
                self.logger.warning(f"Resize to {size}GB failed: {e}; increasing by {self.step_gb}GB")
                size += self.step_gb
                continue
            plan.final_gb = size
            self.logger.info(f"Filesystem shrunk to {size}GB.")
            return size

        raise ShrinkFailed(
            f"Resize failed after {self.max_attempts} attempts. Container disk unchanged.",
            last_error=str(last_err) if last_err else None,
            target_gb=plan.target_gb,
        )
