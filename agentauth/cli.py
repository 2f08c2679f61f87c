# agentauth/cli.py
import argparse
import logging
import sys

from agentauth import doctor
from agentauth.audit import JsonlAuditLog
from agentauth.backends import BackendTable
from agentauth.config import ConfigError, load_config, settings

logger = logging.getLogger(__name__)


def _load(path: str):
    config = load_config(path)
    return config, BackendTable.from_config(config)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings.config_path = args.config
    try:
        config, backends = _load(settings.config_path)
    except ConfigError as exc:
        logger.error("Failed to load config from %s: %s", args.config, exc)
        return 1

    settings.port = args.port or settings.port or config.port
    settings.bind = args.bind or settings.bind or config.bind

    logger.info("agentauth proxy listening on http://%s:%d", settings.bind, settings.port)
    logger.info("Backends: %s", ", ".join(backends.names()))

    from agentauth.main import app

    # Only the upstream's own date header may reach the agent.
    uvicorn.run(
        app,
        host=settings.bind,
        port=settings.port,
        log_level=settings.log_level.lower(),
        date_header=False,
        server_header=False,
    )
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    try:
        config, backends = _load(args.config)
    except ConfigError as exc:
        logger.error("Invalid config %s: %s", args.config, exc)
        return 1

    print(f"Config OK: {args.config} (listen {config.bind}:{config.port})")
    for backend in backends:
        allowed = ", ".join(backend.allowed_path_patterns) or "all paths"
        # Header names only; values are secrets.
        injected = ", ".join(backend.injected_headers) or "none"
        print(f"  /{backend.name}/* → {backend.target_origin}  [{allowed}]  headers: {injected}")
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    findings = doctor.scan_environment()
    doctor.report(findings)
    return 1 if findings else 0


def cmd_logs(args: argparse.Namespace) -> int:
    path = args.audit_log or settings.audit_log
    if not path:
        try:
            path = load_config(args.config).audit_log
        except ConfigError as exc:
            logger.error("Failed to load config from %s: %s", args.config, exc)
            return 1
    if not path:
        logger.error("No audit log configured")
        return 1

    entries = JsonlAuditLog(path).read()
    for entry in entries[-args.lines:] if args.lines > 0 else entries:
        print(entry.to_json())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentauth",
        description="Localhost HTTP proxy that injects API credentials for agents.",
    )
    parser.add_argument(
        "--config", "-c", default=settings.config_path,
        help="Config file (default: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the proxy in the foreground")
    serve.add_argument("--port", "-p", type=int, help="Override port from config")
    serve.add_argument("--bind", "-b", help="Override bind address (default: 127.0.0.1)")
    serve.set_defaults(func=cmd_serve)

    check = sub.add_parser("check", help="Validate the config and list backends")
    check.set_defaults(func=cmd_check)

    doc = sub.add_parser("doctor", help="Scan the environment for exposed secrets")
    doc.set_defaults(func=cmd_doctor)

    logs = sub.add_parser("logs", help="Print recent audit entries")
    logs.add_argument("--lines", "-n", type=int, default=20, help="Entries to show (0 = all)")
    logs.add_argument("--audit-log", help="Audit log path (default: from settings/config)")
    logs.set_defaults(func=cmd_logs)

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*(argv if argv is not None else sys.argv[1:]), "serve"])
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
