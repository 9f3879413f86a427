from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from ..core.exceptions import ConfigError, ExitCode
from ..core.job import ConversionJob, JobResult, Stage
from ..core.utils import U

Runner = Callable[[ConversionJob], JobResult]


def parse_pairs(text: str) -> List[Tuple[int, int]]:
    """'100:200,101:201' -> [(100, 200), (101, 201)]. IDs must be unique on both sides."""
    pairs: List[Tuple[int, int]] = []
    for raw in (text or "").replace(" ", "").split(","):
        if not raw:
            continue
        ct, sep, vm = raw.partition(":")
        if not sep or not ct.isdigit() or not vm.isdigit():
            raise ConfigError(f"Invalid batch pair {raw!r}", hint="Use CTID:VMID pairs, e.g. 100:200,101:201")
        pairs.append((int(ct), int(vm)))
    if not pairs:
        raise ConfigError("No CTID:VMID pairs given for --batch")
    cts = [p[0] for p in pairs]
    vms = [p[1] for p in pairs]
    dup_ct = sorted({x for x in cts if cts.count(x) > 1})
    dup_vm = sorted({x for x in vms if vms.count(x) > 1})
    if dup_ct or dup_vm:
        raise ConfigError(
            "Batch pairs repeat an ID",
            containers=dup_ct,
            vms=dup_vm,
        )
    return pairs


@dataclass
class BatchPlan:
    jobs: List[ConversionJob]
    parallel: int = 1

    def __post_init__(self) -> None:
        if self.parallel < 1:
            raise ConfigError(f"--parallel must be at least 1, got {self.parallel}")

    @property
    def pairs(self) -> List[Tuple[int, int]]:
        return [(j.ctid, j.vmid) for j in self.jobs]


@dataclass
class BatchSummary:
    results: List[JobResult] = field(default_factory=list)
    peak_running: int = 0

    @property
    def succeeded(self) -> List[JobResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[JobResult]:
        return [r for r in self.results if not r.ok]

    @property
    def exit_code(self) -> int:
        """0 when all succeed; the shared code when every failure agrees; 1 otherwise."""
        codes = {r.exit_code for r in self.failed}
        if not codes:
            return ExitCode.OK
        if len(codes) == 1:
            return codes.pop()
        return ExitCode.GENERIC


class BatchCoordinator:
    """
    Runs independent conversions on a thread pool, never more than
    `parallel` at once. A failing job never stops the others; with the
    cancel event set, queued jobs are skipped and running ones stop at
    their next stage boundary.
    """

    def __init__(
        self,
        logger: logging.Logger,
        plan: BatchPlan,
        *,
        runner: Runner,
        cancel: Optional[threading.Event] = None,
        console: Optional[Console] = None,
    ):
        self.logger = logger
        self.plan = plan
        self.runner = runner
        self.cancel = cancel
        self.console = console or Console()
        self._lock = threading.Lock()
        self._running = 0
        self.peak = 0

    def _run_one(self, job: ConversionJob) -> JobResult:
        if self.cancel is not None and self.cancel.is_set():
            return JobResult(
                ctid=job.ctid,
                vmid=job.vmid,
                stage=Stage.FAILED,
                failed_stage=Stage.INIT,
                exit_code=ExitCode.INTERRUPTED,
                reason="Skipped: batch cancelled",
            )
        with self._lock:
            self._running += 1
            self.peak = max(self.peak, self._running)
            running = self._running
        self.logger.info(f"Starting CT {job.ctid} -> VM {job.vmid} ({running} running)")
        try:
            return self.runner(job)
        finally:
            with self._lock:
                self._running -= 1

    def run(self) -> BatchSummary:
        jobs = self.plan.jobs
        U.banner(self.logger, f"Batch: {len(jobs)} conversion(s), up to {self.plan.parallel} at a time")
        results: List[Optional[JobResult]] = [None] * len(jobs)
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.plan.parallel, thread_name_prefix="lxc2vm"
        ) as executor:
            futures = {executor.submit(self._run_one, job): i for i, job in enumerate(jobs)}
            for fut in concurrent.futures.as_completed(futures):
                i = futures[fut]
                job = jobs[i]
                try:
                    res = fut.result()
                except Exception as e:
                    self.logger.exception(f"CT {job.ctid} -> VM {job.vmid} crashed: {e}")
                    res = JobResult(
                        ctid=job.ctid,
                        vmid=job.vmid,
                        stage=Stage.FAILED,
                        exit_code=ExitCode.GENERIC,
                        reason=f"{type(e).__name__}: {e}",
                    )
                results[i] = res
                status = "OK" if res.ok else f"FAILED at {res.failed_stage.value if res.failed_stage else '?'}"
                self.logger.info(f"CT {job.ctid} -> VM {job.vmid}: {status}")
        summary = BatchSummary(results=[r for r in results if r is not None], peak_running=self.peak)
        self.render(summary)
        return summary

    def render(self, summary: BatchSummary) -> None:
        table = Table(title="Batch summary", header_style="bold cyan")
        for col in ("CT", "VM", "Result", "Failed stage", "Reason", "Time"):
            table.add_column(col)
        for r in summary.results:
            table.add_row(
                str(r.ctid),
                str(r.vmid),
                "[green]OK[/green]" if r.ok else f"[red]exit {r.exit_code}[/red]",
                r.failed_stage.value if r.failed_stage else "",
                r.reason or "",
                f"{r.elapsed_s:.0f}s",
            )
        self.console.print(table)
        self.logger.info(
            f"Batch finished: {len(summary.succeeded)} succeeded, {len(summary.failed)} failed "
            f"(peak {summary.peak_running} concurrent)"
        )
