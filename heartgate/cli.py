"""heartgate command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from heartgate.audit import AuditLogger, read_audit, summarize
from heartgate.config import ClientConfig, ServerConfig, build_config, load_config_file
from heartgate.errors import ConfigError, FatalError
from heartgate.logfile import configure_logging
from heartgate.server import EventLoop
from heartgate.supervisor import ConnectionSupervisor

logger = logging.getLogger("heartgate")

_SERVER_FLAGS = (
	"host",
	"port",
	"drop_after",
	"backlog",
	"poll_interval",
	"log_file",
	"log_level",
	"allow_hook",
	"revoke_hook",
	"audit_log",
	"revoke_on_shutdown",
)
_CLIENT_FLAGS = ("host", "port", "interval", "log_file", "log_level", "audit_log")


def _flag_layer(args: argparse.Namespace, names) -> Dict[str, Any]:
	return {name: getattr(args, name, None) for name in names}


def server_config_from_args(args: argparse.Namespace) -> ServerConfig:
	return build_config(ServerConfig, load_config_file(args.config), _flag_layer(args, _SERVER_FLAGS))


def client_config_from_args(args: argparse.Namespace) -> ClientConfig:
	config = build_config(ClientConfig, load_config_file(args.config), _flag_layer(args, _CLIENT_FLAGS))
	if not config.host:
		raise ConfigError("a gateway host is required")
	return config


def _cmd_serve(args: argparse.Namespace) -> int:
	config = server_config_from_args(args)
	configure_logging(config.log_file, config.log_level)
	audit = AuditLogger(config.audit_log) if config.audit_log else None
	loop = EventLoop(config, audit=audit)
	loop.install_signal_handlers()
	loop.serve_forever()
	return 0


async def _supervise(supervisor: ConnectionSupervisor, runtime: Optional[float]) -> int:
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, supervisor.request_stop)
	await supervisor.run(runtime=runtime)
	return 0


def _cmd_connect(args: argparse.Namespace) -> int:
	config = client_config_from_args(args)
	configure_logging(config.log_file, config.log_level)
	audit = AuditLogger(config.audit_log) if config.audit_log else None
	supervisor = ConnectionSupervisor(
		config.host,
		config.port,
		interval=config.interval,
		read_size=config.read_size,
		audit=audit,
	)
	return asyncio.run(_supervise(supervisor, args.runtime))


def _cmd_audit(args: argparse.Namespace) -> int:
	try:
		rows = read_audit(args.path)
	except OSError as exc:
		raise ConfigError(f"cannot read audit ledger {args.path}: {exc}") from exc
	data = summarize(rows)
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	console = Console()
	table = Table(title="heartgate presence ledger", show_lines=False)
	columns = ("address", "admissions", "evictions", "hook_failures", "last_event", "last_seen")
	for column in columns:
		table.add_column(column.replace("_", " ").upper())
	for entry in data:
		table.add_row(*(str(entry.get(column, "")) for column in columns))
	console.print(table)
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="heartgate", description="Presence-based network access gateway")
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Run the gateway and grant access to connected peers")
	serve.add_argument("--config", help="JSON file with server options")
	serve.add_argument("--host", help="Address to listen on (default: all interfaces)")
	serve.add_argument("--port", help="Port number or service name")
	serve.add_argument("--drop-after", type=float, help="Seconds of silence before a client is dropped")
	serve.add_argument("--backlog", type=int, help="Pending connection backlog")
	serve.add_argument("--poll-interval", type=float, help="Upper bound of one loop wait, seconds")
	serve.add_argument("--log-file", help="Append log lines to this file")
	serve.add_argument("--log-level", help="error, info or debug (or 0-2)")
	serve.add_argument("--allow-hook", help="Executable run with the peer address on admission")
	serve.add_argument("--revoke-hook", help="Executable run with the peer address on eviction")
	serve.add_argument("--audit-log", help="CSV ledger of admissions, evictions and hook runs")
	serve.add_argument(
		"--revoke-on-shutdown",
		action="store_true",
		default=None,
		help="Run the revocation hook for every client when stopping",
	)
	serve.set_defaults(handler=_cmd_serve)

	connect = sub.add_parser("connect", help="Hold a presence connection to a gateway")
	connect.add_argument("host", nargs="?", help="Gateway host name or address")
	connect.add_argument("--config", help="JSON file with client options")
	connect.add_argument("--port", help="Gateway port number or service name")
	connect.add_argument("--interval", type=float, help="Heartbeat and retry interval, seconds")
	connect.add_argument("--log-file", help="Append log lines to this file (default: stderr)")
	connect.add_argument("--log-level", help="error, info or debug (or 0-2)")
	connect.add_argument("--audit-log", help="CSV ledger of connection attempts")
	connect.add_argument("--runtime", type=float, help="Stop after this many seconds")
	connect.set_defaults(handler=_cmd_connect)

	audit = sub.add_parser("audit", help="Summarize a gateway audit ledger")
	audit.add_argument("path", help="Path to the audit CSV")
	audit.add_argument("--json", action="store_true", help="Output JSON")
	audit.set_defaults(handler=_cmd_audit)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		return args.handler(args)
	except ConfigError as exc:
		parser.error(str(exc))
	except FatalError as exc:
		logger.error("%s", exc)
		return 1


if __name__ == "__main__":
	sys.exit(main())
