"""CLI entry point for termbridge."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from termbridge import __version__
from termbridge.config import Config
from termbridge.modes import Mode


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="termbridge",
        description="Serve an interactive terminal program over WebSocket",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override configuration directory",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # ── init ──────────────────────────────────────────────────────────
    init_p = sub.add_parser("init", help="Write a server configuration")
    init_p.add_argument(
        "--port", type=int, default=3000, help="Server port (default: 3000)"
    )
    init_p.add_argument(
        "--primary-command",
        default="node index.js",
        help="Program for primary sessions (default: node index.js)",
    )
    init_p.add_argument(
        "--restricted-command",
        default="node restricted-shell.js",
        help="Program for restricted sessions (default: node restricted-shell.js)",
    )
    init_p.add_argument(
        "--working-dir",
        default="",
        help="Working directory for spawned programs",
    )
    init_p.add_argument(
        "--static-dir",
        default="",
        help="Directory of browser client files to serve",
    )
    init_p.add_argument(
        "--tls",
        action="store_true",
        help="Generate a self-signed certificate and serve wss://",
    )
    init_p.add_argument(
        "--hostname",
        default="localhost",
        help="Hostname for TLS certificate (default: localhost)",
    )

    # ── serve ─────────────────────────────────────────────────────────
    serve_p = sub.add_parser("serve", help="Start the termbridge server")
    serve_p.add_argument("--host", default=None, help="Override bind address")
    serve_p.add_argument("--port", type=int, default=None, help="Override port")
    serve_p.add_argument(
        "--static-dir", default=None, help="Override static file directory"
    )

    # ── connect ───────────────────────────────────────────────────────
    conn_p = sub.add_parser("connect", help="Open a terminal on a termbridge server")
    conn_p.add_argument("host", nargs="?", default=None, help="Server hostname or IP")
    conn_p.add_argument("--port", type=int, default=None, help="Server port")
    conn_p.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.PRIMARY.value,
        help="Session mode (default: primary)",
    )
    conn_p.add_argument(
        "--caught",
        default=None,
        help="Initial state as JSON (default: [])",
    )
    conn_p.add_argument("--tls", action="store_true", help="Connect with wss://")
    conn_p.add_argument(
        "--fingerprint",
        default=None,
        help="Expected TLS certificate fingerprint for pinning",
    )
    conn_p.add_argument(
        "--ca-cert",
        type=Path,
        default=None,
        help="Path to CA certificate for verification",
    )

    # ── show-fingerprint ──────────────────────────────────────────────
    sub.add_parser(
        "show-fingerprint",
        help="Show the TLS certificate fingerprint (for client pinning)",
    )

    args = parser.parse_args(argv)
    config_dir = Config.config_dir(args.config_dir)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _cmd_init(args, config_dir)
    elif args.command == "serve":
        _cmd_serve(args, config_dir)
    elif args.command == "connect":
        _cmd_connect(args, config_dir)
    elif args.command == "show-fingerprint":
        _cmd_show_fingerprint(config_dir)


# ── Command implementations ──────────────────────────────────────────────


def _cmd_init(args: argparse.Namespace, config_dir: Path) -> None:
    config = Config()
    config.server.port = args.port
    config.server.primary_command = args.primary_command
    config.server.restricted_command = args.restricted_command
    config.server.working_dir = args.working_dir
    config.server.static_dir = args.static_dir
    config.client.server_port = args.port

    if args.tls:
        from termbridge.tls import generate_self_signed_cert

        cert_path = Config.cert_path(config_dir)
        key_path = Config.key_path(config_dir)
        print(f"Generating TLS certificate for '{args.hostname}'...")
        fingerprint = generate_self_signed_cert(
            cert_path, key_path, hostname=args.hostname
        )
        print(f"  Certificate: {cert_path}")
        print(f"  Private key: {key_path}")
        print(f"  Fingerprint: {fingerprint}")
        config.server.tls = True
        config.server.cert_fingerprint = fingerprint
        config.client.tls = True
        config.client.cert_fingerprint = fingerprint

    config_file = config.save(config_dir)
    print(f"Configuration saved to: {config_file}")
    print("\nTo start the server:  termbridge serve")


def _cmd_serve(args: argparse.Namespace, config_dir: Path) -> None:
    from termbridge.server import BridgeServer

    config = Config.load(config_dir)

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    elif os.environ.get("PORT"):
        config.server.port = int(os.environ["PORT"])
    if args.static_dir is not None:
        config.server.static_dir = args.static_dir

    try:
        server = BridgeServer(config, config_dir)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        asyncio.run(server.serve(install_signal_handlers=True))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print("\nServer stopped.")


def _cmd_connect(args: argparse.Namespace, config_dir: Path) -> None:
    from termbridge.client import connect

    config = Config.load(config_dir)
    cc = config.client

    caught = None
    if args.caught is not None:
        try:
            caught = json.loads(args.caught)
        except ValueError:
            print("--caught must be valid JSON.", file=sys.stderr)
            sys.exit(1)

    use_tls = args.tls or cc.tls
    ca_cert = args.ca_cert or (Path(cc.ca_cert_path) if cc.ca_cert_path else None)

    try:
        asyncio.run(connect(
            host=args.host or cc.server_host,
            port=args.port or cc.server_port,
            mode=Mode(args.mode),
            caught=caught,
            path=cc.path,
            use_tls=use_tls,
            fingerprint=args.fingerprint or cc.cert_fingerprint or None,
            ca_cert=ca_cert,
        ))
    except KeyboardInterrupt:
        print("\nDisconnected.")


def _cmd_show_fingerprint(config_dir: Path) -> None:
    cert_path = Config.cert_path(config_dir)
    if not cert_path.exists():
        print("No certificate found. Run 'termbridge init --tls' first.", file=sys.stderr)
        sys.exit(1)

    from termbridge.tls import get_cert_fingerprint
    fp = get_cert_fingerprint(cert_path)
    print(f"TLS Certificate Fingerprint (SHA-256):\n  {fp}")
    print(f"\nUse this with the client:  termbridge connect <host> --tls --fingerprint \"{fp}\"")


if __name__ == "__main__":
    main()
