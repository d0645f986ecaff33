"""CLI client: drive the reconciliation engine against a sync server."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from engine.app import Engine, build_engine
from engine.config import EngineSettings
from engine.exceptions import EngineError
from engine.services.import_service import ImportMode

logger = logging.getLogger(__name__)

CONFIG_FILE = ".addonsync.json"
STATE_DIR = ".addonsync"
PASSWORD_ENV = "ADDONSYNC_PASSWORD"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load CLI config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save CLI config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def read_password(prompt: str = "Password: ") -> str:
    """Password from the environment, else from the terminal."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    return getpass.getpass(prompt)


def engine_settings(dir_path: Path, server_url: str, verbose: bool = False) -> EngineSettings:
    storage_path = dir_path / STATE_DIR / "engine.db"
    return EngineSettings(
        sync_server_url=server_url,
        storage_url=f"sqlite+aiosqlite:///{storage_path}",
        debug=verbose,
    )


async def _flush_push(engine: Engine) -> None:
    """Run a push that a pull asked for now; the process is about to exit."""
    if engine.sync.push_pending:
        await engine.sync.push(manual=True)
        print("Pushed local changes back to the server.")


async def _pull(engine: Engine, sync_id: str | None = None) -> None:
    freshness = await engine.sync.pull(read_password(), sync_id=sync_id)
    print(f"Pulled snapshot ({freshness}).")


def print_status(engine: Engine) -> None:
    session = engine.sync.session
    print("Sync Status:")
    print(f"  Sync id:       {session.sync_id if session else '-'}")
    if session is not None and session.name:
        print(f"  Name:          {session.name}")
    last = session.last_synced_at.isoformat() if session and session.last_synced_at else "never"
    print(f"  Last synced:   {last}")
    print(f"  Accounts:      {len(engine.accounts.accounts)}")
    print(f"  Saved addons:  {len(engine.library.saved_addons)}")
    print(f"  Failover rules:{len(engine.failover.rules)}")
    for account in engine.accounts.accounts:
        print(f"    - {account.name} ({len(account.addons)} addons, {account.status})")


async def run_command(args: argparse.Namespace, engine: Engine) -> None:
    """Execute one engine-backed command."""
    if args.command == "register":
        session = await engine.sync.register(read_password("New sync password: "), args.name)
        print(f"Registered sync id {session.sync_id}. Keep it to sign in on other devices.")

    elif args.command == "pull":
        await _pull(engine, args.sync_id)
        await _flush_push(engine)

    elif args.command == "push":
        # Automatic pushes stay locked until a pull; a CLI push always pulls first.
        await _pull(engine)
        await engine.sync.push(manual=True)
        print("Pushed snapshot.")

    elif args.command == "status":
        print_status(engine)

    elif args.command == "export":
        if args.include_credentials:
            await engine.sync.unlock(read_password())
        document = await engine.export_file(include_credentials=args.include_credentials)
        output = Path(args.output)
        output.write_text(json.dumps(document, indent=2))
        print(f"Exported {len(document['accounts'])} accounts to {output}")

    elif args.command == "import":
        data: Any = json.loads(Path(args.file).read_text())
        await engine.sync.unlock(read_password())
        mode = ImportMode.MIRROR if args.mirror else ImportMode.MERGE
        summary = await engine.import_file(data, mode)
        print(
            f"Imported {summary.accounts} accounts, {summary.saved_addons} saved addons, "
            f"{summary.rules} failover rules."
        )

    elif args.command == "delete":
        if not args.yes:
            answer = input("Delete the remote snapshot and all local state? [y/N] ")
            if answer.strip().lower() not in {"y", "yes"}:
                print("Aborted.")
                return
        await _pull(engine)
        await engine.sync.delete_remote_account()
        print("Deleted sync account.")


async def _run(args: argparse.Namespace, settings: EngineSettings) -> None:
    engine = await build_engine(settings)
    try:
        await engine.load()
        await run_command(args, engine)
    finally:
        await engine.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="addonsync",
        description="Sync addon configurations with an AddonSync server",
    )
    parser.add_argument("--dir", "-d", default=".", help="State directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")
    init = subparsers.add_parser("init", help="Initialize CLI configuration")
    init.add_argument("--server", "-s", dest="init_server", help="Server URL to save")
    register = subparsers.add_parser("register", help="Create a new sync account")
    register.add_argument("--name", help="Display name stored with the snapshot")
    pull = subparsers.add_parser("pull", help="Pull and reconcile the remote snapshot")
    pull.add_argument("--sync-id", help="Sign in to this sync id")
    subparsers.add_parser("push", help="Pull, then push the local snapshot")
    subparsers.add_parser("status", help="Show local sync state")
    export = subparsers.add_parser("export", help="Write an export file")
    export.add_argument("output", help="Output path")
    export.add_argument(
        "--include-credentials", action="store_true", help="Include decrypted auth keys"
    )
    import_ = subparsers.add_parser("import", help="Import an export file")
    import_.add_argument("file", help="Export file to import")
    import_.add_argument(
        "--mirror", action="store_true", help="Replace local state instead of merging"
    )
    delete = subparsers.add_parser("delete", help="Delete the remote sync account")
    delete.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.verbose)
    dir_path = Path(args.dir).resolve()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "init":
        requested = args.init_server or args.server
        if not requested:
            print("Error: --server required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(requested, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        save_config(dir_path, {"server": server_url})
        print(f"Initialized config in {dir_path / CONFIG_FILE}")
        return

    config = load_config(dir_path)
    configured_server_url = args.server or config.get("server")
    if not configured_server_url:
        print("Error: No server configured. Run 'addonsync init --server <url>' first.")
        sys.exit(1)
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        asyncio.run(_run(args, engine_settings(dir_path, server_url, args.verbose)))
    except EngineError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
