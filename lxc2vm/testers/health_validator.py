# lxc2vm/testers/health_validator.py
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import Lxc2VmError
from ..core.utils import U
from ..core.validation_suite import CheckFailed, ValidationSuite
from ..proxmox.parsers import guest_ipv4
from ..proxmox.qm import VMClient

AGENT_POLL_INTERVAL_S = 5
AGENT_TIMEOUT_S = 120
REMOUNT_UNIT = "systemd-remount-fs"


@dataclass
class HealthCheck:
    name: str
    passed: bool
    detail: str = ""
    critical: bool = False


@dataclass
class HealthReport:
    checks: List[HealthCheck] = field(default_factory=list)
    live: bool = False
    agent_ok: Optional[bool] = None
    root_options: Optional[str] = None
    remount_state: Optional[str] = None
    guest_ip: Optional[str] = None
    guest_os: Optional[str] = None
    remediated: bool = False

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def failed(self) -> List[HealthCheck]:
        return [c for c in self.checks if not c.passed]

    @property
    def critical_failures(self) -> List[HealthCheck]:
        return [c for c in self.failed if c.critical]

    @property
    def root_read_only(self) -> bool:
        return self.root_options is not None and "ro" in self.root_options.split(",")

    @property
    def needs_remediation(self) -> bool:
        """Read-only root or a failed remount unit; only known once the agent answered."""
        if not self.agent_ok:
            return False
        if self.root_read_only:
            return True
        return self.remount_state is not None and self.remount_state != "active"

    def degraded_summary(self) -> str:
        return f"root options '{self.root_options}', {REMOUNT_UNIT} '{self.remount_state}'"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["passed"] = self.passed
        d["total"] = self.total
        return d


class HealthValidator:
    """
    VM config checks (always), then live checks through the guest agent when
    the VM is started. An agent that never answers is a warning, not a failure.
    """

    def __init__(
        self,
        logger: logging.Logger,
        qm: VMClient,
        *,
        poll_interval_s: float = AGENT_POLL_INTERVAL_S,
        timeout_s: float = AGENT_TIMEOUT_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.qm = qm
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self.sleep = sleep

    def validate(self, vmid: int, uefi: bool) -> HealthReport:
        U.banner(self.logger, "Post-conversion validation")
        config = self.qm.config(vmid)
        suite = ValidationSuite(self.logger, "Validating VM config")

        def has(key: str) -> Callable[[Dict[str, Any]], Any]:
            def check(ctx: Dict[str, Any]) -> Any:
                if key not in ctx["config"]:
                    raise CheckFailed(f"{key} missing from qm config")
                return ctx["config"][key]
            return check

        suite.add_check("VM config exists", lambda ctx: bool(ctx["config"]), critical=True)
        suite.add_check("Disk attached (scsi0)", has("scsi0"), critical=True)
        suite.add_check("Boot order configured", has("boot"))
        suite.add_check("Network interface (net0)", has("net0"))
        if uefi:
            suite.add_check("EFI disk attached", has("efidisk0"))
        suite.add_check("QEMU guest agent enabled", has("agent"))

        results = suite.run_all({"config": config})
        report = HealthReport(
            checks=[HealthCheck(name, r["passed"], r["detail"], r["critical"]) for name, r in results.items()]
        )
        self.logger.info(f"Validation: {report.passed}/{report.total} checks passed.")
        return report

    def start(self, vmid: int, report: HealthReport) -> None:
        if report.failed:
            self.logger.warning("Not all checks passed. Starting VM anyway (some issues may exist)...")
        self.logger.info(f"Starting VM {vmid}...")
        self.qm.start(vmid)

    def wait_for_agent(self, vmid: int) -> bool:
        tries = max(1, int(self.timeout_s // self.poll_interval_s))
        self.logger.info(f"Waiting for VM to boot and guest agent to respond (up to {int(self.timeout_s)}s)...")
        for i in range(tries):
            if self.qm.agent_ping(vmid):
                return True
            if i < tries - 1:
                self.sleep(self.poll_interval_s)
        return False

    def live_check(self, vmid: int, report: HealthReport) -> HealthReport:
        report.live = True
        report.agent_ok = self.wait_for_agent(vmid)
        if not report.agent_ok:
            self.logger.warning(f"Guest agent did not respond within {int(self.timeout_s)}s. VM may still be booting.")
            self.logger.warning(f"Check manually: qm terminal {vmid} -iface serial0")
            return report
        self.logger.info("Guest agent is responding!")
        self.probe(vmid, report)
        return report

    def _exec_out(self, vmid: int, argv: List[str]) -> Optional[str]:
        try:
            res = self.qm.guest_exec(vmid, argv)
        except Lxc2VmError as e:
            self.logger.debug(f"guest exec {' '.join(argv)} failed: {e}")
            return None
        out = res["out"].strip()
        return out or None

    def probe(self, vmid: int, report: HealthReport) -> HealthReport:
        report.root_options = self._exec_out(vmid, ["findmnt", "-no", "OPTIONS", "/"])
        report.remount_state = self._exec_out(vmid, ["systemctl", "is-active", REMOUNT_UNIT])
        try:
            report.guest_ip = guest_ipv4(self.qm.network_interfaces(vmid))
            report.guest_os = self.qm.osinfo(vmid).get("pretty-name")
        except Lxc2VmError as e:
            self.logger.debug(f"agent info query failed: {e}")
        if report.guest_ip:
            self.logger.info(f"VM network is up, IP: {report.guest_ip}")
        else:
            self.logger.warning("Could not determine VM IP address via guest agent.")
        if report.guest_os:
            self.logger.info(f"Guest OS: {report.guest_os}")
        if report.needs_remediation:
            self.logger.warning(f"Guest is degraded: {report.degraded_summary()}")
        else:
            self.logger.info(f"Root filesystem: {report.root_options or 'unknown'}")
        return report
