import sys
import unittest
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from rosfleet.mikrotik.export import (
    backup_storage_key,
    extract_routeros_version,
    join_continuations,
    menu_path,
    parse_config_summary,
)

EXPORT = """\
# 2026-01-07 00:49:07 by RouterOS 7.16
# software id = ABCD-1234
/interface bridge
add name=bridge1
/interface ethernet
set [ find default-name=ether1 ] comment=uplink
/ip address
add address=10.0.0.1/24 interface=ether1
/ip firewall filter
add action=accept chain=input comment="allow mgmt"
add action=drop chain=input \\
    in-interface=ether1
/ip firewall nat
add action=masquerade chain=srcnat
/ip route add gateway=10.0.0.254
/system identity
set name=r1
"""


class ExportHelperTests(unittest.TestCase):
    def test_summary_counts_entries_per_section(self) -> None:
        summary = parse_config_summary(EXPORT)

        self.assertEqual(2, summary["interfaces"])
        self.assertEqual(1, summary["ip_addresses"])
        self.assertEqual(2, summary["firewall_rules"])
        self.assertEqual(1, summary["nat_rules"])
        self.assertEqual(1, summary["routes"])
        self.assertEqual(0, summary["users"])

    def test_version_from_header(self) -> None:
        self.assertEqual("7.16", extract_routeros_version(EXPORT))
        self.assertIsNone(extract_routeros_version("/system identity\nset name=r1\n"))

    def test_continuation_lines(self) -> None:
        self.assertEqual(
            ["add action=drop chain=input in-interface=ether1", "set name=r1"],
            join_continuations("add action=drop chain=input \\\n    in-interface=ether1\nset name=r1"),
        )

    def test_menu_path(self) -> None:
        self.assertEqual("/ip/firewall/filter", menu_path(["/ip", "firewall", "filter"]))
        self.assertEqual("/ip/route", menu_path(["/ip/route"]))

    def test_storage_keys(self) -> None:
        self.assertEqual(
            "backups/dev-1/1767747000000-export.rsc", backup_storage_key("dev-1", "EXPORT", now_ms=1767747000000)
        )
        self.assertEqual(
            "backups/dev-1/1767747000000-binary.backup", backup_storage_key("dev-1", "BINARY", now_ms=1767747000000)
        )


if __name__ == "__main__":
    unittest.main()
