# lxc2vm/proxmox/vm_provisioner.py
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from ..core.exceptions import ConfigError, ConversionError
from ..core.job import ConversionJob
from ..core.utils import U
from .parsers import ContainerConfig, parse_imported_volume
from .qm import VMClient

MIN_MEMORY_MB = 512
DEFAULT_MEMORY_MB = 2048
DEFAULT_CORES = 2


@dataclass
class VMSpec:
    name: str
    memory_mb: int
    cores: int
    bridge: str
    bios: str


class VMProvisioner:
    """
    Creates the VM shell, imports the disk image and wires it up as the boot
    disk. Import artifacts are left in place on failure so the operator can
    inspect them (`qm config <vmid>`).
    """

    def __init__(self, logger: logging.Logger, qm: VMClient):
        self.logger = logger
        self.qm = qm

    @staticmethod
    def vm_spec(job: ConversionJob, ct: ContainerConfig) -> VMSpec:
        memory = ct.memory_mb if ct.memory_mb is not None else 0
        cores = ct.cores if ct.cores is not None else 0
        return VMSpec(
            name=f"converted-ct{job.ctid}",
            memory_mb=DEFAULT_MEMORY_MB if memory < MIN_MEMORY_MB else memory,
            cores=DEFAULT_CORES if cores < 1 else cores,
            bridge=job.bridge,
            bios=job.firmware,
        )

    def ensure_free(self, vmid: int) -> None:
        if self.qm.exists(vmid):
            raise ConfigError(f"VM ID {vmid} already exists.", hint="Choose a different --vmid.")

    def create(self, job: ConversionJob, ct: ContainerConfig, image: Path, disk_gb: int) -> str:
        self.ensure_free(job.vmid)
        spec = self.vm_spec(job, ct)
        U.banner(self.logger, f"Create VM {job.vmid}")
        self.logger.info(
            f"VM {job.vmid}: {spec.name}, {spec.memory_mb}MB RAM, {spec.cores} cores, bridge {spec.bridge}, bios {spec.bios}"
        )
        try:
            self.qm.create(
                job.vmid,
                name=spec.name,
                memory=spec.memory_mb,
                cores=spec.cores,
                net0=f"virtio,bridge={spec.bridge}",
                bios=spec.bios,
                ostype="l26",
                scsihw="virtio-scsi-pci",
                serial0="socket",
                agent="enabled=1",
            )
            if job.uefi:
                self.qm.set(
                    job.vmid,
                    efidisk0=f"{job.storage}:1,format={job.disk_format},efitype=4m,pre-enrolled-keys=0",
                )
            volume = self.import_disk(job, image)
            self.qm.set(job.vmid, scsi0=volume)
            self.qm.set(job.vmid, boot="order=scsi0")
        except subprocess.CalledProcessError as e:
            raise ConversionError(
                f"VM provisioning failed for {job.vmid}",
                cause=e,
                hint=f"Inspect with: qm config {job.vmid}",
                stderr=U.to_text(e.stderr)[-400:],
            )
        if not self.qm.resize(job.vmid, "scsi0", f"{disk_gb}G"):
            self.logger.debug(f"qm resize scsi0 {disk_gb}G skipped (disk already at size)")
        self.logger.info(f"VM {job.vmid} created with disk {volume}")
        return volume

    def import_disk(self, job: ConversionJob, image: Path) -> str:
        self.logger.info(f"Importing {image.name} into storage '{job.storage}' ({job.disk_format})...")
        output = self.qm.importdisk(job.vmid, image, job.storage, job.disk_format)
        volume = self.discover_volume(job, self.qm.config(job.vmid), output)
        self.logger.info(f"Imported disk: {volume}")
        return volume

    def discover_volume(self, job: ConversionJob, config: Dict[str, Any], import_output: str) -> str:
        """unused0 from the VM config, then the importdisk output, then the conventional name."""
        unused = config.get("unused0")
        if unused:
            return str(unused).split(",", 1)[0]
        parsed = parse_imported_volume(import_output)
        if parsed:
            return parsed
        disk_index = 1 if job.uefi else 0
        guess = f"{job.storage}:vm-{job.vmid}-disk-{disk_index}"
        self.logger.warning(f"Could not detect the imported volume; assuming {guess}")
        return guess
