# lxc2vm/proxmox/parsers.py
"""
Typed parsing of pct / pvesm / qm output.

Everything the orchestrator decides on passes through here first. Output that
does not match the expected shape raises UnparseableOutput instead of being
scraped into a best-guess value.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.exceptions import UnparseableOutput
from ..core.utils import GiB, U

_KV_RE = re.compile(r"^([A-Za-z0-9_.\-]+):\s?(.*)$")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$", re.I)
_MOUNT_RE = re.compile(r"mounted CT \d+ in '([^']+)'")
_IMPORT_RE = re.compile(r"as '(unused\d+):([^']+)'")
_IDMAP_RE = re.compile(r"^([ug])\s+(\d+)\s+(\d+)\s+(\d+)$")

DEFAULT_ID_SHIFT = 100000
DEFAULT_ID_RANGE = 65536


@dataclass(frozen=True)
class RootfsSpec:
    volume: str
    storage: str
    volume_id: str
    size_gb: int
    options: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class IdMap:
    kind: str  # "u" or "g"
    container_start: int
    host_start: int
    count: int


@dataclass
class ContainerConfig:
    raw: Dict[str, str]
    rootfs: Optional[RootfsSpec]
    memory_mb: Optional[int]
    cores: Optional[int]
    hostname: Optional[str]
    unprivileged: bool
    idmaps: List[IdMap] = field(default_factory=list)

    def host_id_base(self, kind: str = "u") -> Optional[int]:
        """Host id that container id 0 maps to, or None for privileged containers."""
        if not self.unprivileged:
            return None
        for m in self.idmaps:
            if m.kind == kind and m.container_start == 0:
                return m.host_start
        return DEFAULT_ID_SHIFT


@dataclass(frozen=True)
class StorageStatus:
    name: str
    type: str
    status: str
    total_bytes: int
    used_bytes: int
    avail_bytes: int


def size_to_gb(s: str) -> int:
    """'8G' / '512M' / '1T' / bare bytes -> whole GiB, rounded up."""
    m = _SIZE_RE.match(s.strip())
    if not m:
        raise ValueError(f"bad size: {s!r}")
    if not m.group(2):
        return int(math.ceil(int(float(m.group(1))) / GiB))
    return int(math.ceil(U.human_to_bytes(s.strip()) / GiB))


def parse_kv(text: str, tool: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for ln in text.splitlines():
        line = ln.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            # snapshot sections follow the live config; only the live part counts
            break
        m = _KV_RE.match(line)
        if not m:
            raise UnparseableOutput(tool, text, expected="'key: value' lines")
        key, val = m.group(1), m.group(2).strip()
        if key in out:
            out[key] = out[key] + "\n" + val
        else:
            out[key] = val
    return out


def parse_options(value: str) -> Dict[str, str]:
    """'virtio,bridge=vmbr0,firewall=1' -> {'_': 'virtio', 'bridge': 'vmbr0', 'firewall': '1'}"""
    opts: Dict[str, str] = {}
    for i, part in enumerate(p for p in value.split(",") if p):
        if "=" in part:
            k, v = part.split("=", 1)
            opts[k.strip()] = v.strip()
        elif i == 0:
            opts["_"] = part.strip()
        else:
            opts[part.strip()] = ""
    return opts


def parse_rootfs(value: str) -> RootfsSpec:
    opts = parse_options(value)
    volume = opts.get("_", "")
    if ":" not in volume:
        raise UnparseableOutput("pct config", value, expected="rootfs '<storage>:<volume>,size=<N>G'")
    storage, volume_id = volume.split(":", 1)
    size = opts.get("size")
    try:
        size_gb = size_to_gb(size) if size else 0
    except ValueError:
        raise UnparseableOutput("pct config", value, expected="size=<N>[KMGT]")
    return RootfsSpec(volume=volume, storage=storage, volume_id=volume_id, size_gb=size_gb, options=opts)


def parse_idmaps(value: str) -> List[IdMap]:
    maps = []
    for ln in value.splitlines():
        m = _IDMAP_RE.match(ln.strip())
        if not m:
            raise UnparseableOutput("pct config", value, expected="lxc.idmap 'u|g <ct> <host> <count>'")
        maps.append(IdMap(m.group(1), int(m.group(2)), int(m.group(3)), int(m.group(4))))
    return maps


def _opt_int(raw: Dict[str, str], key: str) -> Optional[int]:
    v = raw.get(key)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except ValueError:
        raise UnparseableOutput("pct config", f"{key}: {v}", expected=f"integer {key}")


def parse_container_config(text: str) -> ContainerConfig:
    raw = parse_kv(text, "pct config")
    rootfs = parse_rootfs(raw["rootfs"]) if "rootfs" in raw else None
    return ContainerConfig(
        raw=raw,
        rootfs=rootfs,
        memory_mb=_opt_int(raw, "memory"),
        cores=_opt_int(raw, "cores"),
        hostname=raw.get("hostname"),
        unprivileged=raw.get("unprivileged", "0").strip() == "1",
        idmaps=parse_idmaps(raw["lxc.idmap"]) if "lxc.idmap" in raw else [],
    )


def parse_status(text: str, tool: str) -> str:
    """'status: running' -> 'running'"""
    m = re.search(r"^status:\s*(\S+)", text.strip(), re.M)
    if not m:
        raise UnparseableOutput(tool, text, expected="'status: <state>'")
    return m.group(1)


def parse_mount_path(text: str) -> Optional[str]:
    m = _MOUNT_RE.search(text)
    return m.group(1) if m else None


def parse_pvesm_status(text: str) -> List[StorageStatus]:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines or lines[0].split()[:2] != ["Name", "Type"]:
        raise UnparseableOutput("pvesm status", text, expected="table with a 'Name Type Status ...' header")
    out = []
    for ln in lines[1:]:
        cols = ln.split()
        if len(cols) < 6:
            raise UnparseableOutput("pvesm status", ln, expected="6+ columns")
        try:
            total, used, avail = (int(float(x)) * 1024 for x in cols[3:6])
        except ValueError:
            # inactive storages print N/A columns
            total = used = avail = 0
        out.append(StorageStatus(cols[0], cols[1], cols[2], total, used, avail))
    return out


def parse_imported_volume(text: str) -> Optional[str]:
    m = _IMPORT_RE.search(text)
    return m.group(2) if m else None


def parse_json(text: str, tool: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        raise UnparseableOutput(tool, text, expected="JSON")


def parse_guest_exec(text: str) -> Dict[str, Any]:
    """qm guest exec output -> {'exitcode': int, 'out': str, 'err': str}"""
    data = parse_json(text, "qm guest exec")
    if not isinstance(data, dict) or ("exitcode" not in data and "exited" not in data):
        raise UnparseableOutput("qm guest exec", text, expected="exec status object")
    return {
        "exitcode": int(data.get("exitcode", -1)),
        "out": str(data.get("out-data", "")),
        "err": str(data.get("err-data", "")),
    }


def guest_ipv4(interfaces: Any, ifname: str = "ens18") -> Optional[str]:
    if not isinstance(interfaces, list):
        return None
    for itf in interfaces:
        if not isinstance(itf, dict) or itf.get("name") != ifname:
            continue
        for addr in itf.get("ip-addresses", []) or []:
            if addr.get("ip-address-type") == "ipv4" and addr.get("ip-address"):
                return str(addr["ip-address"])
    return None


def parse_resize2fs_min_blocks(text: str) -> Optional[int]:
    m = re.search(r"minimum size[^:]*:\s*(\d+)", text, re.I)
    return int(m.group(1)) if m else None


def parse_block_size(text: str) -> Optional[int]:
    m = re.search(r"^Block size:\s*(\d+)", text, re.M)
    return int(m.group(1)) if m else None


def parse_qemu_img_format(text: str) -> str:
    data = parse_json(text, "qemu-img info")
    fmt = data.get("format") if isinstance(data, dict) else None
    if not fmt:
        raise UnparseableOutput("qemu-img info", text, expected="JSON with 'format'")
    return str(fmt)


def parse_pct_df(text: str) -> Optional[int]:
    """Used bytes of the rootfs row of `pct df`, or None when absent."""
    for ln in text.splitlines():
        cols = ln.split()
        if len(cols) >= 4 and cols[0] == "rootfs":
            try:
                return U.human_to_bytes(cols[3])
            except ValueError:
                raise UnparseableOutput("pct df", text, expected="'rootfs <volume> <size> <used> ...'")
    return None
