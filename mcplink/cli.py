from __future__ import annotations

import argparse
import getpass
import logging
import signal
import sys
import threading
from typing import Any, List, Optional

import yaml

from mcplink.config import get_settings
from mcplink.errors import ConnectorError
from mcplink.runtime import ToolConnectionRuntime
from mcplink.utils import setup_logging
from mcplink.vault import generate_key

logger = logging.getLogger("mcplink")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcplink", description="Manage connections to external MCP tool servers")
    sub = parser.add_subparsers(dest="command", required=True)

    servers = sub.add_parser("servers", help="Manage tool server records")
    servers_sub = servers.add_subparsers(dest="action", required=True)

    servers_sub.add_parser("list")
    servers_sub.add_parser("active")

    show_cmd = servers_sub.add_parser("show")
    show_cmd.add_argument("server_id")

    create_cmd = servers_sub.add_parser("create")
    create_cmd.add_argument("--name", required=True)
    create_cmd.add_argument("--url", required=True)
    create_cmd.add_argument("--description", default=None)
    create_cmd.add_argument("--no-credential", action="store_true", help="Do not prompt for a credential")
    create_cmd.add_argument("--test", action="store_true", help="Test the connection before saving")

    update_cmd = servers_sub.add_parser("update")
    update_cmd.add_argument("server_id")
    update_cmd.add_argument("--name", default=None)
    update_cmd.add_argument("--url", default=None)
    update_cmd.add_argument("--description", default=None)
    update_cmd.add_argument("--credential", action="store_true", help="Prompt for a new credential")

    delete_cmd = servers_sub.add_parser("delete")
    delete_cmd.add_argument("server_id")

    activate_cmd = servers_sub.add_parser("activate")
    activate_cmd.add_argument("server_id")

    servers_sub.add_parser("deactivate-all")

    test_cmd = servers_sub.add_parser("test")
    test_cmd.add_argument("server_id")

    test_url_cmd = sub.add_parser("test-url", help="Test an unsaved server")
    test_url_cmd.add_argument("url")
    test_url_cmd.add_argument("--no-credential", action="store_true")

    sub.add_parser("status", help="Show the recorded status of every server")
    sub.add_parser("capabilities", help="Connect to the active server and list its capabilities")
    sub.add_parser("generate-key", help="Generate a base64 ENCRYPTION_KEY")
    sub.add_parser("run", help="Supervise the active server until interrupted")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        print(generate_key())
        return

    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "run":
        runtime = ToolConnectionRuntime(settings)
        _warn_if_ephemeral(runtime)
        _cmd_run(runtime)
        return

    runtime = ToolConnectionRuntime(settings, supervise=False)
    _warn_if_ephemeral(runtime)
    try:
        runtime.start(warm_up=False)
        result = _dispatch(runtime, args)
    except ConnectorError as exc:
        _emit({"error": exc.to_dict()}, stream=sys.stderr)
        raise SystemExit(1)
    finally:
        runtime.shutdown()

    if result is not None:
        _emit(result)


def _dispatch(runtime: ToolConnectionRuntime, args: argparse.Namespace) -> Any:
    if args.command == "servers":
        return _cmd_servers(runtime, args)
    if args.command == "test-url":
        credential = None if args.no_credential else _read_credential()
        return runtime.test_candidate(args.url, credential)
    if args.command == "status":
        return _cmd_status(runtime)
    if args.command == "capabilities":
        return _cmd_capabilities(runtime)
    raise SystemExit(f"Unknown command: {args.command}")


def _cmd_servers(runtime: ToolConnectionRuntime, args: argparse.Namespace) -> Any:
    action = args.action

    if action == "list":
        return runtime.list_servers()
    if action == "show":
        return runtime.get_server(args.server_id)
    if action == "active":
        return runtime.get_active_server() or {"active": None}

    if action == "create":
        credential = None if args.no_credential else _read_credential()
        if args.test:
            result = runtime.test_candidate(args.url, credential)
            if not result["success"]:
                _emit({"test": result}, stream=sys.stderr)
                raise SystemExit(1)
        return runtime.create_server(args.name, args.url, credential, args.description)

    if action == "update":
        current = runtime.get_server(args.server_id)
        credential = _read_credential("New credential: ") if args.credential else None
        return runtime.update_server(
            args.server_id,
            args.name or current["name"],
            args.url or current["url"],
            credential,
            args.description if args.description is not None else current["description"],
        )

    if action == "delete":
        runtime.delete_server(args.server_id)
        return {"deleted": args.server_id}
    if action == "activate":
        return runtime.activate_server(args.server_id)
    if action == "deactivate-all":
        return {"deactivated": runtime.deactivate_all()}
    if action == "test":
        return runtime.test_server(args.server_id)

    raise SystemExit(f"Unknown servers action: {action}")


def _cmd_status(runtime: ToolConnectionRuntime) -> List[dict]:
    keys = ("id", "name", "active", "status", "status_message", "capability_count", "last_connected_at", "last_tested_at")
    return [{key: server[key] for key in keys} for server in runtime.list_servers()]


def _cmd_capabilities(runtime: ToolConnectionRuntime) -> dict:
    status = runtime.retry_active_connection()
    capabilities = runtime.get_active_capabilities()
    return {
        "server": status["server_name"] if status else None,
        "state": status["state"] if status else None,
        "error": status["last_error_message"] if status else None,
        "capabilities": [
            {"name": capability.name, "description": capability.description} for capability in capabilities
        ],
    }


def _cmd_run(runtime: ToolConnectionRuntime) -> None:
    stop = threading.Event()

    def handle_signal(signum, _frame) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    runtime.start()
    try:
        while not stop.wait(timeout=1.0):
            pass
    finally:
        runtime.shutdown()
    logger.info("Supervisor stopped")


def _warn_if_ephemeral(runtime: ToolConnectionRuntime) -> None:
    if runtime.vault.is_ephemeral:
        logger.warning(
            "ENCRYPTION_KEY is not set: credentials stored by this process cannot be decrypted by any "
            "other mcplink process, including 'mcplink run'. Set a key from 'mcplink generate-key'."
        )


def _read_credential(prompt: str = "Credential (leave blank for none): ") -> Optional[str]:
    value = getpass.getpass(prompt=prompt).strip()
    return value or None


def _emit(data: Any, stream=None) -> None:
    print(yaml.safe_dump(data, sort_keys=False).strip(), file=stream or sys.stdout)


if __name__ == "__main__":
    main()
