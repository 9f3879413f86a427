import logging
import tempfile
import unittest
from pathlib import Path

import yaml

from lxc2vm.fixers.network_fixer import (
    NetworkConfigType,
    NetworkFixer,
    NetworkMode,
    disable_iface_stanzas,
    ensure_dhcp_stanza,
    netplan_rename,
    parse_ifcfg,
)

LOG = logging.getLogger("test-network")

INTERFACES = """auto lo
iface lo inet loopback

auto eth0
iface eth0 inet static
    address 192.168.1.50/24
    gateway 192.168.1.1
"""


class TestInterfacesHelpers(unittest.TestCase):
    def test_disable_comments_whole_block(self):
        out = disable_iface_stanzas(INTERFACES)
        self.assertIn("#auto eth0", out)
        self.assertIn("#iface eth0 inet static", out)
        self.assertIn("#    address 192.168.1.50/24", out)
        self.assertIn("iface lo inet loopback", out)
        self.assertNotIn("\niface eth0", out)

    def test_disable_keeps_other_names_on_auto_line(self):
        out = disable_iface_stanzas("auto lo eth0\niface lo inet loopback\n")
        self.assertIn("#auto lo eth0", out)
        self.assertIn("\nauto lo\n", out)

    def test_dhcp_stanza_added_once(self):
        once = ensure_dhcp_stanza("auto lo\n")
        self.assertIn("iface ens18 inet dhcp", once)
        self.assertEqual(ensure_dhcp_stanza(once), once)

    def test_netplan_rename_keeps_settings(self):
        doc = {"network": {"version": 2, "ethernets": {"eth0": {"addresses": ["10.0.0.5/24"], "match": {"name": "eth0"}}}}}
        new, changed = netplan_rename(doc)
        self.assertTrue(changed)
        eth = new["network"]["ethernets"]
        self.assertNotIn("eth0", eth)
        self.assertEqual(eth["ens18"]["addresses"], ["10.0.0.5/24"])
        self.assertEqual(eth["ens18"]["match"]["name"], "ens18")

    def test_netplan_rename_without_eth0(self):
        _, changed = netplan_rename({"network": {"ethernets": {"ens18": {"dhcp4": True}}}})
        self.assertFalse(changed)

    def test_parse_ifcfg(self):
        self.assertEqual(
            parse_ifcfg('# x\nDEVICE=eth0\nIPADDR="10.1.1.2"\n'),
            {"DEVICE": "eth0", "IPADDR": "10.1.1.2"},
        )


class TestNetworkFixer(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def write(self, rel, text):
        p = self.root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    def test_interfaces_preserve_renames_static_config(self):
        p = self.write("etc/network/interfaces", INTERFACES)
        changes = NetworkFixer(LOG, NetworkMode.PRESERVE).fix(self.root)
        text = p.read_text()
        self.assertIn("iface ens18 inet static", text)
        self.assertIn("address 192.168.1.50/24", text)
        self.assertNotIn("eth0", text)
        self.assertTrue((self.root / "etc/network/interfaces.lxc2vm.bak").exists())
        self.assertEqual(changes[0].type, NetworkConfigType.INTERFACES)

    def test_interfaces_replace_uses_dhcp(self):
        p = self.write("etc/network/interfaces", INTERFACES)
        NetworkFixer(LOG, NetworkMode.REPLACE).fix(self.root)
        text = p.read_text()
        self.assertIn("iface ens18 inet dhcp", text)
        self.assertIn("#iface eth0 inet static", text)

    def test_netplan_replace(self):
        old = self.write("etc/netplan/50-cloud-init.yaml", "network:\n  ethernets:\n    eth0: {dhcp4: true}\n")
        NetworkFixer(LOG, NetworkMode.REPLACE).fix(self.root)
        self.assertFalse(old.exists())
        self.assertTrue((self.root / "etc/netplan/50-cloud-init.yaml.lxc2vm.bak").exists())
        new = self.root / "etc/netplan/01-netcfg.yaml"
        doc = yaml.safe_load(new.read_text())
        self.assertEqual(doc["network"]["ethernets"], {"ens18": {"dhcp4": True}})
        self.assertEqual(new.stat().st_mode & 0o777, 0o600)

    def test_netplan_preserve(self):
        p = self.write("etc/netplan/10-lxc.yaml", "network:\n  version: 2\n  ethernets:\n    eth0:\n      addresses: [10.0.0.9/24]\n")
        NetworkFixer(LOG, NetworkMode.PRESERVE).fix(self.root)
        doc = yaml.safe_load(p.read_text())
        self.assertEqual(doc["network"]["ethernets"]["ens18"]["addresses"], ["10.0.0.9/24"])
        self.assertFalse((self.root / "etc/netplan/99-vm-ens18.yaml").exists())

    def test_ifcfg_preserve_drops_mac(self):
        self.write(
            "etc/sysconfig/network-scripts/ifcfg-eth0",
            "DEVICE=eth0\nBOOTPROTO=none\nIPADDR=10.2.2.2\nHWADDR=aa:bb:cc:dd:ee:ff\n",
        )
        NetworkFixer(LOG, NetworkMode.PRESERVE).fix(self.root)
        d = self.root / "etc/sysconfig/network-scripts"
        new = parse_ifcfg((d / "ifcfg-ens18").read_text())
        self.assertEqual(new["DEVICE"], "ens18")
        self.assertEqual(new["IPADDR"], "10.2.2.2")
        self.assertNotIn("HWADDR", new)
        self.assertFalse((d / "ifcfg-eth0").exists())
        self.assertTrue((d / "ifcfg-eth0.lxc2vm.bak").exists())

    def test_networkd_replace_writes_dhcp_unit(self):
        self.write("etc/systemd/network/eth0.network", "[Match]\nName=eth0\n\n[Network]\nAddress=10.0.0.3/24\n")
        NetworkFixer(LOG, NetworkMode.REPLACE).fix(self.root)
        d = self.root / "etc/systemd/network"
        self.assertFalse((d / "eth0.network").exists())
        self.assertIn("Name=ens18", (d / "20-ens18.network").read_text())

    def test_networkd_preserve_renames_in_place(self):
        p = self.write("etc/systemd/network/eth0.network", "[Match]\nName=eth0\n")
        NetworkFixer(LOG, NetworkMode.PRESERVE).fix(self.root)
        self.assertIn("Name=ens18", p.read_text())
        self.assertFalse((self.root / "etc/systemd/network/20-ens18.network").exists())

    def test_nothing_to_fix(self):
        self.assertEqual(NetworkFixer(LOG).fix(self.root), [])


if __name__ == "__main__":
    unittest.main()
