import sys
import unittest
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
TESTS_DIR = ROOT_DIR / "tests"
for path in (SRC_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import FakeSocket
from rosfleet.core.errors import PartialCommandFailure, RouterOSAuthenticationError, RouterOSConnectionError
from rosfleet.mikrotik.api import ApiConnection, encode_sentence
from rosfleet.mikrotik.client import ImportOutcome, RouterOSApiClient, encode_params, translate_cli_line

LOGIN_OK = encode_sentence(["!done"])


def _client(incoming: bytes) -> tuple[RouterOSApiClient, FakeSocket]:
    sock = FakeSocket(incoming)
    client = RouterOSApiClient("192.0.2.1", "admin", "pw", socket_factory=lambda address, timeout=None: sock)
    return client, sock


def _sent_sentences(sock: FakeSocket) -> list[list[str]]:
    reader = ApiConnection(FakeSocket(bytes(sock.sent)))
    sentences = []
    while reader.sock.incoming:
        sentences.append(reader.read_sentence())
    return sentences


class EncodeParamsTests(unittest.TestCase):
    def test_queries_attributes_and_booleans(self) -> None:
        words = encode_params({"?prefix": "10.0.0.0/8", "name": "x", "disabled": True, "comment": None})

        self.assertEqual(["?prefix=10.0.0.0/8", "=name=x", "=disabled=yes"], words)


class TranslateCliLineTests(unittest.TestCase):
    def test_menu_only_line_switches_menu(self) -> None:
        self.assertEqual(("/ip/firewall/filter", None), translate_cli_line("/ip firewall filter", "/"))

    def test_relative_line_uses_current_menu(self) -> None:
        menu, words = translate_cli_line('add chain=input action=accept comment="allow mgmt"', "/ip/firewall/filter")

        self.assertEqual("/ip/firewall/filter", menu)
        self.assertEqual(
            ["/ip/firewall/filter/add", "=chain=input", "=action=accept", "=comment=allow mgmt"],
            words,
        )

    def test_find_by_default_name_becomes_numbers(self) -> None:
        menu, words = translate_cli_line(
            "/interface ethernet set [ find default-name=ether1 ] comment=uplink", "/"
        )

        self.assertEqual("/interface/ethernet", menu)
        self.assertEqual(["/interface/ethernet/set", "=numbers=ether1", "=comment=uplink"], words)

    def test_positional_item_becomes_numbers(self) -> None:
        _, words = translate_cli_line("remove 0", "/ip/route")

        self.assertEqual(["/ip/route/remove", "=numbers=0"], words)

    def test_scripting_lines_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            translate_cli_line(':put "hello"', "/")

    def test_complex_find_expression_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            translate_cli_line("set [ find where disabled=yes and name~\"x\" ] comment=y", "/interface")


class ApiClientTests(unittest.TestCase):
    def test_execute_returns_records(self) -> None:
        client, sock = _client(
            LOGIN_OK
            + encode_sentence(["!re", "=.id=*1", "=version=7.16 (stable)"])
            + encode_sentence(["!done"])
        )

        client.connect()
        result = client.execute("/system/resource/print")

        self.assertTrue(result.success)
        self.assertEqual([{".id": "*1", "version": "7.16 (stable)"}], result.records)
        self.assertEqual(["/system/resource/print"], _sent_sentences(sock)[1])

    def test_trap_becomes_failed_result(self) -> None:
        client, _ = _client(
            LOGIN_OK + encode_sentence(["!trap", "=message=no such command"]) + encode_sentence(["!done"])
        )
        client.connect()

        result = client.execute("/bogus/print")

        self.assertFalse(result.success)
        self.assertEqual("no such command", result.error)
        self.assertTrue(client.is_connected)

    def test_execute_without_connect_fails_softly(self) -> None:
        client, _ = _client(b"")

        result = client.execute("/system/resource/print")

        self.assertFalse(result.success)
        self.assertIn("Not connected", result.error)

    def test_connect_failure_reports_host_and_port(self) -> None:
        def refuse(address, timeout=None):
            raise ConnectionRefusedError("connection refused")

        client = RouterOSApiClient("192.0.2.1", "admin", "pw", socket_factory=refuse)

        with self.assertRaises(RouterOSConnectionError) as ctx:
            client.connect()
        self.assertIn("192.0.2.1:8728", str(ctx.exception))
        self.assertFalse(client.is_connected)

    def test_rejected_login_closes_socket(self) -> None:
        client, sock = _client(encode_sentence(["!trap", "=message=invalid user"]) + encode_sentence(["!done"]))

        with self.assertRaises(RouterOSAuthenticationError):
            client.connect()
        self.assertTrue(sock.closed)
        self.assertFalse(client.is_connected)

    def test_lost_connection_marks_client_disconnected(self) -> None:
        client, _ = _client(LOGIN_OK)
        client.connect()

        result = client.execute("/system/resource/print")

        self.assertFalse(result.success)
        self.assertFalse(client.is_connected)

    def test_disconnect_is_idempotent(self) -> None:
        client, sock = _client(LOGIN_OK)
        client.connect()

        client.disconnect()
        client.disconnect()

        self.assertTrue(sock.closed)
        self.assertFalse(client.is_connected)


class ImportConfigTests(unittest.TestCase):
    def test_import_continues_after_failing_lines(self) -> None:
        config = "\n".join(
            [
                "# 2026-01-07 00:49:07 by RouterOS 7.16",
                "/ip address",
                "add address=10.0.0.1/24 interface=ether1",
                "add address=bad interface=ether9",
                ':put "hello"',
                "/system identity set name=r1",
            ]
        )
        client, sock = _client(
            LOGIN_OK
            + encode_sentence(["!done"])
            + encode_sentence(["!trap", "=message=invalid value for argument address"])
            + encode_sentence(["!done"])
            + encode_sentence(["!done"])
        )
        client.connect()

        outcome = client.import_config(config, verbose=True)

        self.assertEqual(2, outcome.success_count)
        self.assertEqual(
            [
                'Error executing "add address=bad interface=ether9": invalid value for argument address',
                'Error executing ":put "hello"": scripting commands are not supported over the API: :put "hello"',
            ],
            outcome.line_errors,
        )
        self.assertFalse(outcome.success)
        self.assertEqual(
            [
                "add address=10.0.0.1/24 interface=ether1 -> ok",
                "add address=bad interface=ether9 -> invalid value for argument address",
                ':put "hello" -> scripting commands are not supported over the API: :put "hello"',
                "/system identity set name=r1 -> ok",
            ],
            outcome.log,
        )
        sent = _sent_sentences(sock)
        self.assertEqual(["/ip/address/add", "=address=10.0.0.1/24", "=interface=ether1"], sent[1])
        self.assertEqual(["/system/identity/set", "=name=r1"], sent[3])

    def test_verbose_log_includes_untranslatable_lines(self) -> None:
        client, _ = _client(LOGIN_OK + encode_sentence(["!done"]))
        client.connect()

        outcome = client.import_config(":global x 1\n/system identity set name=r1\n", verbose=True)

        self.assertEqual(2, len(outcome.log))
        self.assertTrue(outcome.log[0].startswith(":global x 1 -> scripting commands are not supported"))
        self.assertEqual("/system identity set name=r1 -> ok", outcome.log[1])

    def test_verbose_log_includes_lines_skipped_after_connection_loss(self) -> None:
        client, _ = _client(LOGIN_OK)
        client.connect()

        outcome = client.import_config(
            "/system identity set name=r1\n/system clock set time-zone-name=UTC\n", verbose=True
        )

        self.assertFalse(client.is_connected)
        self.assertEqual(2, len(outcome.line_errors))
        self.assertEqual(2, len(outcome.log))
        self.assertEqual("/system clock set time-zone-name=UTC -> connection lost", outcome.log[1])

    def test_continuation_lines_are_joined(self) -> None:
        config = "/ip firewall filter\nadd action=accept chain=input \\\n    comment=mgmt\n"
        client, sock = _client(LOGIN_OK + encode_sentence(["!done"]))
        client.connect()

        outcome = client.import_config(config)

        self.assertTrue(outcome.success)
        self.assertEqual(
            ["/ip/firewall/filter/add", "=action=accept", "=chain=input", "=comment=mgmt"],
            _sent_sentences(sock)[1],
        )

    def test_import_without_connection_reports_error(self) -> None:
        client, _ = _client(b"")

        outcome = client.import_config("/system identity set name=r1")

        self.assertEqual(0, outcome.success_count)
        self.assertEqual(1, len(outcome.line_errors))

    def test_aggregate_error_keeps_every_line(self) -> None:
        outcome = ImportOutcome(success_count=3, line_errors=["first", "second"])

        self.assertEqual("first; second", outcome.error)
        with self.assertRaises(PartialCommandFailure) as ctx:
            outcome.raise_for_errors()
        self.assertEqual(["first", "second"], ctx.exception.line_errors)


if __name__ == "__main__":
    unittest.main()
