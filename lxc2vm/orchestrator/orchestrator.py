from __future__ import annotations

import contextlib
import datetime as _dt
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.table import Table

from ..converters.disk_provisioner import DiskImage, DiskProvisioner
from ..converters.exporter import DiskExporter, export_format
from ..converters.migrator import FilesystemMigrator, measure_used
from ..converters.shrinker import ContainerShrinker
from ..converters.workspace import DEFAULT_WORK_BASE, Chooser, WorkspaceSelector, required_bytes
from ..core.exceptions import (
    Cancelled,
    ConfigError,
    ConversionError,
    ExitCode,
    InsufficientSpace,
    Lxc2VmError,
)
from ..core.job import ConversionJob, JobResult, Stage
from ..core.locks import DEFAULT_LOCK_DIR, id_locks
from ..core.logger import job_logger
from ..core.recovery_manager import DEFAULT_STATE_DIR, RecoveryManager, ResumeState
from ..core.sizing import VM_DISK_OVERHEAD_GB
from ..core.utils import GiB, U
from ..fixers.boot_injector import BootInjector
from ..fixers.remediator import Remediator
from ..proxmox.parsers import ContainerConfig
from ..proxmox.pct import ContainerClient
from ..proxmox.pvesm import StorageClient
from ..proxmox.qm import VMClient
from ..proxmox.vm_provisioner import VMProvisioner
from ..testers.health_validator import HealthReport, HealthValidator

Log = Union[logging.Logger, logging.LoggerAdapter]

SNAPSHOT_PREFIX = "lxc2vm-pre-"


def snapshot_name(now: Optional[_dt.datetime] = None) -> str:
    return SNAPSHOT_PREFIX + (now or _dt.datetime.now()).strftime("%Y%m%d-%H%M%S")


@dataclass
class SnapshotHandle:
    name: str
    created: bool = False


@dataclass
class Collaborators:
    """Everything one conversion talks to. Built per job so each logs through its own adapter."""
    pct: ContainerClient
    pvesm: StorageClient
    qm: VMClient
    shrinker: ContainerShrinker
    workspace: WorkspaceSelector
    disks: DiskProvisioner
    migrator: FilesystemMigrator
    injector: BootInjector
    vms: VMProvisioner
    health: HealthValidator
    remediator: Remediator
    exporter: DiskExporter
    recovery: RecoveryManager

    @classmethod
    def build(
        cls,
        log: Log,
        *,
        cancel: Optional[threading.Event] = None,
        chooser: Optional[Chooser] = None,
        choice: Optional[str] = None,
        state_dir: Path = DEFAULT_STATE_DIR,
        work_base: Path = DEFAULT_WORK_BASE,
    ) -> "Collaborators":
        pct = ContainerClient(log)
        pvesm = StorageClient(log)
        qm = VMClient(log)
        health = HealthValidator(log, qm)
        return cls(
            pct=pct,
            pvesm=pvesm,
            qm=qm,
            shrinker=ContainerShrinker(log, pct, pvesm),
            workspace=WorkspaceSelector(log, default_base=work_base, chooser=chooser, choice=choice),
            disks=DiskProvisioner(log),
            migrator=FilesystemMigrator(log, cancel=cancel),
            injector=BootInjector(log),
            vms=VMProvisioner(log, qm),
            health=health,
            remediator=Remediator(log, qm, pvesm, health),
            exporter=DiskExporter(log),
            recovery=RecoveryManager(log, state_dir),
        )


@dataclass
class JobContext:
    job: ConversionJob
    log: Log
    result: JobResult
    stack: contextlib.ExitStack = field(default_factory=contextlib.ExitStack)
    ct: Optional[ContainerConfig] = None
    was_running: bool = False
    snapshot: Optional[SnapshotHandle] = None
    disk_gb: Optional[int] = None
    work: Optional[Path] = None
    image: Optional[DiskImage] = None
    volume: Optional[str] = None
    resume_state: Optional[ResumeState] = None
    resume_saved: bool = False
    report: Optional[HealthReport] = None
    source_destroyed: bool = False


class ConversionOrchestrator:
    """
    Runs one container -> VM conversion through its stages in order:

        init, snapshot?, shrink?, workspace, provision, migrate, inject,
        vm_create, validate, live_check?, remediate?, export?, template?,
        destroy_source?, done

    Any failure lands in `failed`: host resources are released, the
    workspace is removed unless a resume record points at it, the snapshot
    is rolled back when asked to, and a container that was running is
    started again. run() never raises for conversion errors; it returns a
    JobResult carrying the exit code.
    """

    def __init__(
        self,
        logger: logging.Logger,
        job: ConversionJob,
        *,
        collaborators: Optional[Collaborators] = None,
        cancel: Optional[threading.Event] = None,
        lock_dir: Path = DEFAULT_LOCK_DIR,
        discard_resume: bool = False,
        chooser: Optional[Chooser] = None,
        workspace_choice: Optional[str] = None,
        console: Optional[Console] = None,
    ):
        self.job = job
        self.log = job_logger(logger, job.ctid, job.vmid)
        self.cancel = cancel
        self.lock_dir = lock_dir
        self.discard_resume = discard_resume
        self.console = console or Console()
        self.c = collaborators or Collaborators.build(
            self.log, cancel=cancel, chooser=chooser, choice=workspace_choice
        )

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run(self) -> JobResult:
        job = self.job
        ctx = JobContext(job=job, log=self.log, result=JobResult(ctid=job.ctid, vmid=job.vmid))
        start = time.time()
        try:
            if job.dry_run:
                self._dry_run(ctx)
            else:
                with id_locks(self.log, job.ctid, job.vmid, self.lock_dir):
                    try:
                        self._convert(ctx)
                    except BaseException as e:
                        self._fail(ctx, e)
                        raise
        except KeyboardInterrupt:
            self._record_error(ctx, Cancelled())
        except Lxc2VmError as e:
            self._record_error(ctx, e)
        except subprocess.CalledProcessError as e:
            cmd = " ".join(e.cmd) if isinstance(e.cmd, (list, tuple)) else str(e.cmd)
            self._record_error(
                ctx,
                ConversionError(f"Command failed: {cmd} (exit {e.returncode})", cause=e, stderr=U.to_text(e.stderr)[-400:]),
            )
        except Exception as e:
            self.log.debug("Unexpected error", exc_info=True)
            self._record_error(ctx, ConversionError(f"{type(e).__name__}: {e}", cause=e))
        finally:
            ctx.result.elapsed_s = round(time.time() - start, 1)
        return ctx.result

    def _record_error(self, ctx: JobContext, e: Lxc2VmError) -> None:
        r = ctx.result
        r.ok = False
        r.exit_code = e.code
        r.reason = e.msg
        r.hint = e.hint
        if r.failed_stage is None:
            r.failed_stage = r.stage
        r.stage = Stage.FAILED

    def _stage(self, ctx: JobContext, stage: Stage) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled(f"Cancelled before stage '{stage.value}'")
        ctx.result.stage = stage
        self.log.debug(f"Stage: {stage.value}")

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _convert(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        U.banner(self.log, f"Convert CT {job.ctid} -> VM {job.vmid}")

        self._stage(ctx, Stage.INIT)
        self._init(ctx)

        if job.snapshot:
            self._stage(ctx, Stage.SNAPSHOT)
            self._snapshot(ctx)

        ctx.disk_gb = job.disk_size_gb
        if job.shrink and ctx.resume_state is None:
            self._stage(ctx, Stage.SHRINK)
            self._shrink(ctx)

        self._stage(ctx, Stage.WORKSPACE)
        self._workspace(ctx)

        self._stage(ctx, Stage.PROVISION)
        if ctx.resume_state is not None:
            ctx.image = c.disks.attach(ctx.work, job.firmware, owner=job.key)
        else:
            ctx.image = c.disks.provision(ctx.work, ctx.disk_gb, job.firmware, owner=job.key)
        ctx.stack.callback(ctx.image.close)

        self._stage(ctx, Stage.MIGRATE)
        self._migrate(ctx)

        self._stage(ctx, Stage.INJECT)
        distro = c.injector.inject(ctx.image, keep_network=job.keep_network, owner=job.key)
        ctx.result.distro = distro.pretty_name or distro.id
        # the image must be detached before qm importdisk reads it
        ctx.image.close()

        self._stage(ctx, Stage.VM_CREATE)
        ctx.volume = c.vms.create(job, ctx.ct, ctx.image.path, ctx.disk_gb)

        self._stage(ctx, Stage.VALIDATE)
        ctx.report = c.health.validate(job.vmid, job.uefi)
        critical = ctx.report.critical_failures
        if critical:
            raise ConversionError(
                f"VM {job.vmid} failed validation: {', '.join(ch.name for ch in critical)}",
                hint=f"Inspect with: qm config {job.vmid}",
            )

        if job.start:
            self._stage(ctx, Stage.LIVE_CHECK)
            c.health.start(job.vmid, ctx.report)
            c.health.live_check(job.vmid, ctx.report)
            if ctx.report.needs_remediation:
                self._stage(ctx, Stage.REMEDIATE)
                self._remediate(ctx)
        ctx.result.health = ctx.report.to_dict()

        if job.export_path is not None:
            self._stage(ctx, Stage.EXPORT)
            self._export(ctx)

        if job.as_template:
            self._stage(ctx, Stage.TEMPLATE)
            self._template(ctx)

        if job.destroy_source:
            self._stage(ctx, Stage.DESTROY_SOURCE)
            self._destroy_source(ctx)

        self._finish(ctx)

    def _init(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        ctx.ct = c.pct.config(job.ctid)
        c.vms.ensure_free(job.vmid)
        storage = c.pvesm.get(job.storage)
        self.log.info(f"Target storage '{storage.name}' ({storage.type}), {U.human_bytes(storage.avail_bytes)} available")

        state = c.recovery.load(job.ctid, job.vmid)
        if state is not None and self.discard_resume:
            self.log.warning(f"Discarding resume state from {state.timestamp} ({state.workspace_path})")
            c.workspace.remove(Path(state.workspace_path))
            c.recovery.clear(job.ctid, job.vmid)
            state = None
        if job.resume:
            if state is None or state.stage != Stage.MIGRATE.value:
                raise ConfigError(
                    f"No resume state for CT {job.ctid} -> VM {job.vmid}.",
                    hint="Run the conversion without --resume.",
                )
            if not Path(state.workspace_path).is_dir():
                raise ConfigError(
                    f"Resume workspace {state.workspace_path} no longer exists.",
                    hint="Start over with --discard-resume.",
                )
            saved_fw = state.data.get("firmware", job.firmware)
            if saved_fw != job.firmware:
                raise ConfigError(
                    f"Resume state was created with firmware {saved_fw}, not {job.firmware}.",
                    hint=f"Re-run with -B {saved_fw} or use --discard-resume.",
                )
            self.log.info(f"Resuming from stage '{state.stage}' saved {state.timestamp}")
            ctx.resume_state = state
        elif state is not None:
            raise ConfigError(
                f"An interrupted conversion of CT {job.ctid} -> VM {job.vmid} exists (saved {state.timestamp}).",
                hint="Re-run with --resume to continue it, or --discard-resume to start over.",
            )

        ctx.was_running = c.pct.status(job.ctid) == "running"
        if ctx.was_running:
            c.pct.stop(job.ctid)

    def _snapshot(self, ctx: JobContext) -> None:
        name = snapshot_name()
        self.log.info(f"Creating snapshot '{name}' of CT {self.job.ctid}...")
        try:
            self.c.pct.snapshot(self.job.ctid, name)
        except subprocess.CalledProcessError as e:
            raise ConversionError(
                f"Snapshot of CT {self.job.ctid} failed",
                cause=e,
                hint="The storage backing the container may not support snapshots; run without --snapshot.",
            )
        ctx.snapshot = SnapshotHandle(name, created=True)

    def _shrink(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        plan = c.shrinker.shrink(job.ctid, ctx.ct, job.headroom_gb)
        ctx.result.shrink = plan.to_dict()
        final = plan.final_gb or plan.current_gb
        if job.disk_size_gb is None:
            ctx.disk_gb = final + VM_DISK_OVERHEAD_GB
            self.log.info(f"VM disk size: {final}GB + {VM_DISK_OVERHEAD_GB}GB overhead = {ctx.disk_gb}GB")
        elif job.disk_size_gb < final:
            self.log.warning(f"Disk size {job.disk_size_gb}GB is below the shrunk container size ({final}GB)")
        ctx.ct = c.pct.config(job.ctid)

    def _workspace(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        state = ctx.resume_state
        if state is not None:
            ctx.work = Path(state.workspace_path)
            ctx.disk_gb = int(state.data.get("disk_gb") or ctx.disk_gb or 0)
            self.log.info(f"Reusing workspace {ctx.work} ({ctx.disk_gb}GB image)")
            return
        if ctx.disk_gb is None:
            raise ConfigError("Disk size could not be determined.", hint="Provide -d <GB> or use --shrink.")
        base = c.workspace.select(ctx.disk_gb, job.temp_dir)
        ctx.work = c.workspace.prepare(base, job.ctid)
        ctx.result.disk_size_gb = ctx.disk_gb

    def _migrate(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        ctx.result.disk_size_gb = ctx.disk_gb
        src = c.pct.mount(job.ctid)
        try:
            used = measure_used(self.log, src)
            capacity = ctx.disk_gb * GiB
            if used > capacity:
                raise InsufficientSpace(
                    f"Container uses {U.human_bytes(used)}, more than the {ctx.disk_gb}GB disk.",
                    hint="Increase -d/--disk-size or use --shrink.",
                )
            try:
                c.migrator.migrate(
                    src,
                    ctx.image.mount_point,
                    total_bytes=used,
                    id_bases=(ctx.ct.host_id_base("u"), ctx.ct.host_id_base("g")),
                )
            except BaseException:
                c.recovery.save(
                    job.ctid,
                    job.vmid,
                    Stage.MIGRATE.value,
                    ctx.work,
                    {"disk_gb": ctx.disk_gb, "firmware": job.firmware, "format": job.disk_format},
                )
                ctx.resume_saved = True
                ctx.result.resume_saved = True
                raise
        finally:
            c.pct.unmount(job.ctid)

    def _remediate(self, ctx: JobContext) -> None:
        job = self.job
        after = self.c.remediator.remediate(job.vmid, ctx.report, uefi=job.uefi, owner=job.key, work_dir=ctx.work)
        ctx.report = after
        ctx.result.health = after.to_dict()
        if not after.agent_ok:
            raise ConversionError(
                f"Guest agent silent after remediation; repair unconfirmed: {after.degraded_summary()}",
                hint=f"Inspect the guest with: qm terminal {job.vmid} -iface serial0",
            )
        if after.needs_remediation:
            raise ConversionError(
                f"Guest still degraded after remediation: {after.degraded_summary()}",
                hint=f"Inspect the guest with: qm terminal {job.vmid} -iface serial0",
            )

    def _export(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        src = c.pvesm.path(ctx.volume)
        running = c.qm.status(job.vmid) == "running"
        if running:
            self.log.warning(f"VM {job.vmid} is running; exporting a crash-consistent copy")
        out = c.exporter.export(
            src,
            job.export_path,
            out_format=export_format(job.export_path, job.disk_format),
            force_share=running,
        )
        ctx.result.notes.append(f"exported to {out}")

    def _template(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        if c.qm.status(job.vmid) == "running":
            c.qm.stop(job.vmid)
        try:
            c.qm.template(job.vmid)
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"Could not convert VM {job.vmid} to a template", cause=e)
        self.log.info(f"VM {job.vmid} converted to a template")
        ctx.result.notes.append("converted to template")

    def _destroy_source(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        self.log.warning(f"Destroying source container {job.ctid}...")
        try:
            c.pct.destroy(job.ctid)
        except subprocess.CalledProcessError as e:
            raise ConversionError(f"Could not destroy CT {job.ctid}", cause=e, hint=f"Remove it manually: pct destroy {job.ctid}")
        # --purge takes the snapshots with it
        ctx.snapshot = None
        ctx.source_destroyed = True
        ctx.result.notes.append(f"destroyed CT {job.ctid}")

    def _finish(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        ctx.stack.close()
        if ctx.snapshot is not None and ctx.snapshot.created:
            try:
                c.pct.delete_snapshot(job.ctid, ctx.snapshot.name)
                self.log.info(f"Deleted snapshot '{ctx.snapshot.name}'")
                ctx.snapshot.created = False
            except subprocess.CalledProcessError:
                self.log.warning(
                    f"Snapshot '{ctx.snapshot.name}' could not be deleted; remove it with: "
                    f"pct delsnapshot {job.ctid} {ctx.snapshot.name}"
                )
        c.recovery.clear(job.ctid, job.vmid)
        if ctx.work is not None:
            c.workspace.remove(ctx.work)
        self._stage(ctx, Stage.DONE)
        ctx.result.ok = True
        ctx.result.exit_code = ExitCode.OK
        U.banner(self.log, "Conversion complete")
        self.log.info(f"CT {job.ctid} -> VM {job.vmid} done ({ctx.disk_gb}GB, {ctx.result.distro or 'unknown distro'})")

    # ------------------------------------------------------------------
    # failure path
    # ------------------------------------------------------------------

    def _fail(self, ctx: JobContext, err: BaseException) -> None:
        job, c = self.job, self.c
        ctx.result.failed_stage = ctx.result.stage
        what = "interrupted" if isinstance(err, (KeyboardInterrupt, Cancelled)) else "failed"
        self.log.error(f"Conversion {what} at stage '{ctx.result.stage.value}': {err or type(err).__name__}")
        try:
            ctx.stack.close()
        except Exception as e:
            self.log.error(f"Cleanup error: {e}")

        if ctx.resume_saved:
            self.log.warning(f"Workspace kept for resume: {ctx.work} (re-run with --resume)")
        else:
            if ctx.resume_state is not None:
                c.recovery.clear(job.ctid, job.vmid)
            if ctx.work is not None:
                c.workspace.remove(ctx.work)

        snap = ctx.snapshot
        if snap is not None and snap.created:
            if job.rollback:
                self.log.warning(f"Rolling back CT {job.ctid} to snapshot '{snap.name}'...")
                try:
                    c.pct.rollback(job.ctid, snap.name)
                    self.log.info(f"CT {job.ctid} restored from '{snap.name}' (snapshot kept)")
                except subprocess.CalledProcessError as e:
                    self.log.error(f"Rollback failed ({e}); restore manually: pct rollback {job.ctid} {snap.name}")
            else:
                self.log.warning(
                    f"Snapshot '{snap.name}' left on CT {job.ctid}. Restore with: pct rollback {job.ctid} {snap.name} "
                    f"or remove with: pct delsnapshot {job.ctid} {snap.name}"
                )

        if ctx.was_running and not ctx.source_destroyed:
            try:
                c.pct.start(job.ctid)
            except subprocess.CalledProcessError as e:
                self.log.error(f"Could not restart CT {job.ctid}: {e}")

    # ------------------------------------------------------------------
    # dry run
    # ------------------------------------------------------------------

    def _dry_run(self, ctx: JobContext) -> None:
        job, c = self.job, self.c
        U.banner(self.log, f"DRY-RUN: CT {job.ctid} -> VM {job.vmid}")
        ct = c.pct.config(job.ctid)
        storage = c.pvesm.get(job.storage)
        if c.qm.exists(job.vmid):
            self.log.warning(f"VM ID {job.vmid} already exists; a real run would stop here")

        disk = str(job.disk_size_gb) + "GB" if job.disk_size_gb else "?"
        shrink_row = "no"
        if job.shrink:
            used = c.pct.df_used(job.ctid)
            if used is None:
                shrink_row = "estimate unavailable (container not running)"
            else:
                plan = c.shrinker.plan(job.ctid, ct, job.headroom_gb, used_bytes=used)
                final = plan.current_gb if plan.skipped else plan.target_gb
                shrink_row = "skip (already near optimal)" if plan.skipped else f"{plan.current_gb}GB -> {plan.target_gb}GB"
                if job.disk_size_gb is None:
                    disk = f"{final + VM_DISK_OVERHEAD_GB}GB (estimated)"
        post = [label for label, on in (
            ("start + health check", job.start),
            (f"export to {job.export_path}", job.export_path is not None),
            ("convert to template", job.as_template),
            ("destroy source", job.destroy_source),
        ) if on]

        table = Table(title=f"Conversion plan: CT {job.ctid} -> VM {job.vmid}", header_style="bold cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        rows = [
            ("Container", f"{job.ctid} ({ct.hostname or 'unnamed'}, {'unprivileged' if ct.unprivileged else 'privileged'})"),
            ("Root filesystem", f"{ct.rootfs.volume if ct.rootfs else '?'}"),
            ("Target storage", f"{storage.name} ({storage.type}, {U.human_bytes(storage.avail_bytes)} free)"),
            ("Disk size", disk),
            ("Format / firmware", f"{job.disk_format} / {job.firmware}"),
            ("Bridge", job.bridge),
            ("Network config", "keep (eth0 -> ens18)" if job.keep_network else "replace with DHCP on ens18"),
            ("Workspace", str(job.temp_dir or c.workspace.default_base)),
            ("Shrink", shrink_row),
            ("Snapshot", ("yes, rollback on failure" if job.rollback else "yes") if job.snapshot else "no"),
            ("Afterwards", ", ".join(post) or "nothing"),
        ]
        for k, v in rows:
            table.add_row(k, v)
        self.console.print(table)
        if job.disk_size_gb:
            self.log.info(f"Workspace needs {U.human_bytes(required_bytes(job.disk_size_gb))} free")
        self.log.info("DRY-RUN: no changes made.")
        ctx.result.stage = Stage.DONE
        ctx.result.ok = True
