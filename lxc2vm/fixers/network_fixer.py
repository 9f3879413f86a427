# lxc2vm/fixers/network_fixer.py
"""
Network configuration fixer for container to VM conversion.

A container's NIC is a veth named eth0; the VM gets a virtio NIC that the
guest names ens18. Handled formats:
- Debian/Ubuntu: /etc/network/interfaces, /etc/netplan/*.yaml
- RedHat/CentOS/Fedora: /etc/sysconfig/network-scripts/ifcfg-*
- systemd-networkd: /etc/systemd/network/*.network

Two modes:
- preserve: rename eth0 to ens18 in place (static addresses survive) and make
  sure ens18 is configured somewhere, falling back to DHCP.
- replace: disable every eth0 definition and configure ens18 with DHCP.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

OLD_IFACE = "eth0"
NEW_IFACE = "ens18"
BACKUP_SUFFIX = ".lxc2vm.bak"

_ETH0_RE = re.compile(r"\beth0\b")
_STANZA_RE = re.compile(r"^(auto|allow-[\w-]+|iface|mapping|source|source-directory|rename)\b")


class NetworkMode(Enum):
    PRESERVE = "preserve"
    REPLACE = "replace"


class NetworkConfigType(Enum):
    """Types of network configuration files."""

    INTERFACES = "interfaces"
    NETPLAN = "netplan"
    IFCFG_RH = "ifcfg-rh"
    SYSTEMD_NETWORK = "systemd-network"


@dataclass
class NetworkChange:
    path: str
    type: NetworkConfigType
    fixes_applied: List[str] = field(default_factory=list)


def rename_iface(text: str) -> str:
    return _ETH0_RE.sub(NEW_IFACE, text)


def ensure_loopback(text: str) -> str:
    if re.search(r"^\s*auto\s+lo\b", text, re.M):
        return text
    return text.rstrip("\n") + "\n\nauto lo\niface lo inet loopback\n"


def ensure_dhcp_stanza(text: str) -> str:
    if re.search(rf"^\s*iface\s+{NEW_IFACE}\b", text, re.M):
        return text
    return text.rstrip("\n") + f"\n\nallow-hotplug {NEW_IFACE}\niface {NEW_IFACE} inet dhcp\n"


def disable_iface_stanzas(text: str, iface: str = OLD_IFACE) -> str:
    """Comment out `auto/allow-* iface` lines and the whole `iface <iface>` block."""
    out = []
    in_block = False
    for ln in text.splitlines():
        stripped = ln.strip()
        if _STANZA_RE.match(stripped):
            words = stripped.split()
            if words[0] == "iface":
                in_block = len(words) > 1 and words[1] == iface
            else:
                in_block = False
                if (words[0] == "auto" or words[0].startswith("allow-")) and iface in words[1:]:
                    rest = [w for w in words[1:] if w != iface]
                    out.append(f"#{ln}")
                    if rest:
                        out.append(f"{words[0]} {' '.join(rest)}")
                    continue
        if in_block and stripped and not stripped.startswith("#"):
            out.append(f"#{ln}")
            continue
        out.append(ln)
    return "\n".join(out) + "\n" if out else text


def netplan_document() -> Dict[str, Any]:
    return {"network": {"version": 2, "ethernets": {NEW_IFACE: {"dhcp4": True}}}}


def netplan_rename(doc: Any) -> Tuple[Any, bool]:
    """Move network.ethernets.eth0 to ens18 (keeping its settings)."""
    if not isinstance(doc, dict):
        return doc, False
    eths = (doc.get("network") or {}).get("ethernets")
    if not isinstance(eths, dict) or OLD_IFACE not in eths or NEW_IFACE in eths:
        return doc, False
    settings = eths.pop(OLD_IFACE)
    if isinstance(settings, dict):
        match = settings.get("match")
        if isinstance(match, dict) and match.get("name") == OLD_IFACE:
            match["name"] = NEW_IFACE
        if settings.get("set-name") == OLD_IFACE:
            settings["set-name"] = NEW_IFACE
    eths[NEW_IFACE] = settings
    return doc, True


def ifcfg_text(settings: Optional[Dict[str, str]] = None) -> str:
    kv = {"DEVICE": NEW_IFACE, "NAME": NEW_IFACE, "TYPE": "Ethernet", "ONBOOT": "yes", "BOOTPROTO": "dhcp"}
    if settings:
        kv.update(settings)
        kv["DEVICE"] = NEW_IFACE
        kv["NAME"] = NEW_IFACE
    return "".join(f"{k}={v}\n" for k, v in kv.items())


def parse_ifcfg(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for ln in text.splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        out[k.strip()] = v.strip().strip('"')
    return out


def networkd_text() -> str:
    return f"[Match]\nName={NEW_IFACE}\n\n[Network]\nDHCP=yes\n"


class NetworkFixer:
    """Rewrites guest network configuration under a mounted root."""

    def __init__(self, logger: logging.Logger, mode: NetworkMode = NetworkMode.REPLACE):
        self.logger = logger
        self.mode = mode
        self.changes: List[NetworkChange] = []

    def _record(self, path: Path, root: Path, kind: NetworkConfigType, fix: str) -> None:
        rel = "/" + str(path.relative_to(root))
        for ch in self.changes:
            if ch.path == rel:
                ch.fixes_applied.append(fix)
                return
        self.changes.append(NetworkChange(rel, kind, [fix]))

    @staticmethod
    def _backup(path: Path) -> None:
        bak = path.with_name(path.name + BACKUP_SUFFIX)
        if not bak.exists():
            bak.write_bytes(path.read_bytes())

    def fix(self, root: Path) -> List[NetworkChange]:
        self.changes = []
        self._fix_interfaces(root)
        self._fix_netplan(root)
        self._fix_ifcfg(root)
        self._fix_networkd(root)
        if not self.changes:
            self.logger.warning("No network configuration found; the VM will need manual network setup.")
        for ch in self.changes:
            self.logger.info(f"network: {ch.path}: {', '.join(ch.fixes_applied)}")
        return self.changes

    def _fix_interfaces(self, root: Path) -> None:
        path = root / "etc" / "network" / "interfaces"
        if not path.is_file():
            return
        kind = NetworkConfigType.INTERFACES
        old = path.read_text(encoding="utf-8", errors="replace")
        new = ensure_loopback(old)
        if self.mode is NetworkMode.PRESERVE:
            renamed = rename_iface(new)
            if renamed != new:
                self._record(path, root, kind, "eth0->ens18")
            new = renamed
        else:
            disabled = disable_iface_stanzas(new)
            if disabled != new:
                self._record(path, root, kind, "disabled eth0")
            new = disabled
        with_dhcp = ensure_dhcp_stanza(new)
        if with_dhcp != new:
            self._record(path, root, kind, "ens18 dhcp")
        new = with_dhcp
        if new != old:
            self._backup(path)
            path.write_text(new, encoding="utf-8")

    def _fix_netplan(self, root: Path) -> None:
        d = root / "etc" / "netplan"
        if not d.is_dir():
            return
        kind = NetworkConfigType.NETPLAN
        files = sorted(list(d.glob("*.yaml")) + list(d.glob("*.yml")))
        if self.mode is NetworkMode.REPLACE:
            for f in files:
                self._backup(f)
                f.unlink()
                self._record(f, root, kind, "removed")
            target = d / "01-netcfg.yaml"
            target.write_text(yaml.safe_dump(netplan_document(), default_flow_style=False, sort_keys=False), encoding="utf-8")
            target.chmod(0o600)
            self._record(target, root, kind, "ens18 dhcp")
            return
        has_new = False
        for f in files:
            text = f.read_text(encoding="utf-8", errors="replace")
            try:
                doc = yaml.safe_load(text)
            except yaml.YAMLError as e:
                self.logger.warning(f"Skipping unparsable netplan file {f.name}: {e}")
                continue
            doc, changed = netplan_rename(doc)
            if changed:
                self._backup(f)
                f.write_text(yaml.safe_dump(doc, default_flow_style=False, sort_keys=False), encoding="utf-8")
                self._record(f, root, kind, "eth0->ens18")
            if NEW_IFACE in text or changed:
                has_new = True
        if not has_new:
            target = d / "99-vm-ens18.yaml"
            target.write_text(yaml.safe_dump(netplan_document(), default_flow_style=False, sort_keys=False), encoding="utf-8")
            target.chmod(0o600)
            self._record(target, root, kind, "ens18 dhcp")

    def _fix_ifcfg(self, root: Path) -> None:
        d = root / "etc" / "sysconfig" / "network-scripts"
        old = d / f"ifcfg-{OLD_IFACE}"
        if not old.is_file():
            return
        kind = NetworkConfigType.IFCFG_RH
        new = d / f"ifcfg-{NEW_IFACE}"
        settings = parse_ifcfg(old.read_text(encoding="utf-8", errors="replace"))
        # drop MAC pinning; the VM NIC has a different address
        for key in ("HWADDR", "MACADDR"):
            settings.pop(key, None)
        if self.mode is NetworkMode.PRESERVE:
            new.write_text(ifcfg_text(settings), encoding="utf-8")
            self._record(new, root, kind, "eth0->ens18")
        else:
            new.write_text(ifcfg_text(), encoding="utf-8")
            self._record(new, root, kind, "ens18 dhcp")
        old.rename(old.with_name(old.name + BACKUP_SUFFIX))
        self._record(old, root, kind, "disabled")

    def _fix_networkd(self, root: Path) -> None:
        d = root / "etc" / "systemd" / "network"
        if not d.is_dir():
            return
        kind = NetworkConfigType.SYSTEMD_NETWORK
        matched = False
        for f in sorted(d.glob("*.network")):
            text = f.read_text(encoding="utf-8", errors="replace")
            if not re.search(rf"^\s*Name\s*=.*\b{OLD_IFACE}\b", text, re.M):
                if re.search(rf"^\s*Name\s*=.*\b{NEW_IFACE}\b", text, re.M):
                    matched = True
                continue
            if self.mode is NetworkMode.PRESERVE:
                self._backup(f)
                f.write_text(rename_iface(text), encoding="utf-8")
                self._record(f, root, kind, "eth0->ens18")
                matched = True
            else:
                f.rename(f.with_name(f.name + BACKUP_SUFFIX))
                self._record(f, root, kind, "disabled")
        if not matched and self.changes_for(kind):
            target = d / f"20-{NEW_IFACE}.network"
            target.write_text(networkd_text(), encoding="utf-8")
            self._record(target, root, kind, "ens18 dhcp")

    def changes_for(self, kind: NetworkConfigType) -> List[NetworkChange]:
        return [c for c in self.changes if c.type is kind]
