"""Configuration, logging and command-line tests."""
from __future__ import annotations

import contextlib
import io
import json
import logging
import re
import tempfile
import unittest
from pathlib import Path

from heartgate import cli
from heartgate.audit import AuditLogger, read_audit
from heartgate.config import ClientConfig, ServerConfig, build_config, load_config_file, normalize_level
from heartgate.errors import ConfigError
from heartgate.logfile import configure_logging


class ConfigTest(unittest.TestCase):
    def test_server_defaults_follow_gateway_build(self) -> None:
        config = ServerConfig()
        self.assertEqual(config.port, "2884")
        self.assertEqual(config.drop_after, 10.0)
        self.assertEqual(config.backlog, 10)
        self.assertEqual(config.log_level, "debug")
        self.assertEqual(config.allow_hook, "/usr/local/sbin/ip_allow")
        self.assertEqual(config.revoke_hook, "/usr/local/sbin/ip_block")
        self.assertFalse(config.revoke_on_shutdown)

    def test_levels_accept_names_and_numbers(self) -> None:
        self.assertEqual(normalize_level("DEBUG"), "debug")
        self.assertEqual(normalize_level(1), "info")
        self.assertEqual(normalize_level("0"), "error")
        with self.assertRaises(ConfigError):
            normalize_level("verbose")
        with self.assertRaises(ConfigError):
            normalize_level(3)

    def test_invalid_values_are_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            ServerConfig(drop_after=0)
        with self.assertRaises(ConfigError):
            ClientConfig(host="gw", interval=-1)
        with self.assertRaises(ConfigError):
            build_config(ServerConfig, {"drop_aftr": 5})

    def test_integer_settings_reject_floats_and_booleans(self) -> None:
        with self.assertRaises(ConfigError):
            ServerConfig(read_size=128.0)
        with self.assertRaises(ConfigError):
            ServerConfig(backlog=10.5)
        with self.assertRaises(ConfigError):
            ServerConfig(backlog=True)
        with self.assertRaises(ConfigError):
            ClientConfig(host="gw", read_size=100.0)
        with self.assertRaises(ConfigError):
            build_config(ServerConfig, {"read_size": 128.0})
        self.assertEqual(ServerConfig(backlog=5, read_size=64).read_size, 64)

    def test_empty_hook_disables_it(self) -> None:
        config = build_config(ServerConfig, {"allow_hook": ""})
        self.assertIsNone(config.allow_hook)

    def test_config_file_must_be_an_object(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "cfg.json")
            path.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config_file(path)
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config_file(path)


class CommandLineTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        root = logging.getLogger("heartgate")
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        self._tmp.cleanup()

    def test_flags_override_config_file(self) -> None:
        path = self.tmp / "server.json"
        path.write_text(json.dumps({"port": "9000", "drop_after": 30, "log_level": 1}), encoding="utf-8")
        args = cli._build_parser().parse_args(["serve", "--config", str(path), "--port", "9100", "--revoke-hook", ""])

        config = cli.server_config_from_args(args)

        self.assertEqual(config.port, "9100")
        self.assertEqual(config.drop_after, 30)
        self.assertEqual(config.log_level, "info")
        self.assertIsNone(config.revoke_hook)
        self.assertFalse(config.revoke_on_shutdown)

    def test_client_config_takes_host_from_file_or_argument(self) -> None:
        path = self.tmp / "client.json"
        path.write_text(json.dumps({"host": "gw.example.net", "interval": 2}), encoding="utf-8")
        args = cli._build_parser().parse_args(["connect", "--config", str(path)])

        config = cli.client_config_from_args(args)

        self.assertEqual(config.host, "gw.example.net")
        self.assertEqual(config.interval, 2)

    def test_connect_without_host_is_a_usage_error(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as raised:
                cli.main(["connect"])
        self.assertEqual(raised.exception.code, 2)

    def test_unopenable_log_file_exits_with_status_one(self) -> None:
        blocker = self.tmp / "not-a-dir"
        blocker.write_text("", encoding="utf-8")

        with contextlib.redirect_stderr(io.StringIO()):
            status = cli.main(["serve", "--log-file", str(blocker / "auth.log")])

        self.assertEqual(status, 1)

    def test_audit_summary_as_json(self) -> None:
        ledger = AuditLogger(self.tmp / "audit.csv")
        ledger.log("admit", status="ok", address="192.0.2.1")
        ledger.log("hook_spawn", status="error", address="192.0.2.1", message="No such file")
        ledger.log("evict", status="timeout", address="192.0.2.1")
        ledger.log("admit", status="ok", address="192.0.2.2")

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            status = cli.main(["audit", str(ledger.path), "--json"])

        self.assertEqual(status, 0)
        summary = {entry["address"]: entry for entry in json.loads(out.getvalue())}
        self.assertEqual(summary["192.0.2.1"]["admissions"], 1)
        self.assertEqual(summary["192.0.2.1"]["evictions"], 1)
        self.assertEqual(summary["192.0.2.1"]["hook_failures"], 1)
        self.assertEqual(summary["192.0.2.1"]["last_event"], "evict:timeout")
        self.assertEqual(summary["192.0.2.2"]["evictions"], 0)

    def test_audit_summary_as_table(self) -> None:
        ledger = AuditLogger(self.tmp / "audit.csv")
        ledger.log("admit", status="ok", address="192.0.2.1")

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            status = cli.main(["audit", str(ledger.path)])

        self.assertEqual(status, 0)
        self.assertIn("presence ledger", out.getvalue())


class LogFileTest(unittest.TestCase):
    def tearDown(self) -> None:
        root = logging.getLogger("heartgate")
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    def test_lines_are_timestamped_and_filtered_by_level(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "auth.log")
            configure_logging(path, "info")
            log = logging.getLogger("heartgate.test")

            log.info("New connection: 7 (IP: 192.0.2.1)")
            log.debug("Connection timer reset: 7")

            lines = path.read_text(encoding="utf-8").splitlines()
            self.tearDown()

        self.assertEqual(len(lines), 1)
        self.assertRegex(lines[0], r"^\[\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\] New connection: 7 \(IP: 192\.0\.2\.1\)$")

    def test_reconfiguring_does_not_duplicate_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "auth.log")
            configure_logging(path, "debug")
            configure_logging(path, 2)
            logging.getLogger("heartgate").error("select: boom")
            text = path.read_text(encoding="utf-8")
            self.tearDown()

        self.assertEqual(len(re.findall("select: boom", text)), 1)


class AuditLoggerTest(unittest.TestCase):
    def test_rows_carry_utc_timestamp_and_extra(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = AuditLogger(Path(tmp, "audit.csv"))
            ledger.log("evict", status="eof", address="192.0.2.5", extra={"handle": 9})
            with ledger.path.open(encoding="utf-8") as handle:
                header = handle.readline().strip()
            rows = read_audit(ledger.path)

        self.assertEqual(header, "timestamp,event,status,address,message,extra")
        self.assertRegex(rows[0]["timestamp"], r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}\+00:00$")
        self.assertEqual(rows[0]["address"], "192.0.2.5")
        self.assertEqual(json.loads(rows[0]["extra"]), {"handle": 9})


if __name__ == "__main__":
    unittest.main()
