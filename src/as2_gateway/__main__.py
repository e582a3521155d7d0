"""Entry point for `python -m as2_gateway` and the `as2-gateway` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from as2_gateway import LifecycleStateMachine, create_app
from as2_gateway.directory_store import create_directories
from as2_gateway.errors import As2Error
from as2_gateway.models import Direction
from as2_gateway.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AS2 file transfer gateway")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: AS2_LOG_LEVEL)",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Directory relative configured paths are resolved against (default: cwd)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)

    commands.add_parser("init", help="Create the file, partnership and certificate directories")

    deliver = commands.add_parser("deliver-receipt", help="Attempt one deferred receipt delivery")
    deliver.add_argument("partnership")
    deliver.add_argument("message_id")

    status = commands.add_parser("status", help="Show the lifecycle stage of a message")
    status.add_argument("partnership")
    status.add_argument("message_id")

    view = commands.add_parser("view", help="Show a partnership with key material masked")
    view.add_argument("partnership")
    return parser.parse_args(argv)


def init_directories(settings: RuntimeSettings, root: Path) -> list[Path]:
    directories = [settings.file_path(root), settings.partnership_path(root)]
    certificate_path = settings.certificate_path(root)
    if certificate_path is None:
        logging.warning("AS2_CERTIFICATE_DIR is not set, skipping certificate directory")
    else:
        directories.append(certificate_path)
    return create_directories(directories)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.error("Invalid configuration: %s", exc)
        return 1

    logging.basicConfig(
        level=args.log_level or settings.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    root = args.root.resolve() if args.root is not None else Path.cwd()

    try:
        if args.command == "init":
            for directory in init_directories(settings, root):
                print(f"created={directory}")
            return 0

        machine = LifecycleStateMachine.from_settings(settings, root=root)

        if args.command == "serve":
            import uvicorn

            uvicorn.run(create_app(machine), host=args.host, port=args.port, log_level=settings.log_level.lower())
            return 0

        if args.command == "deliver-receipt":
            outcome = machine.deliver_deferred_receipt(args.partnership, args.message_id)
            print(f"status={outcome.status}")
            return 0 if outcome.status == 200 else 1

        if args.command == "status":
            for direction in Direction:
                stage = machine.stage(args.partnership, args.message_id, direction)
                print(f"{direction.value}={stage.value if stage is not None else 'none'}")
            return 0

        if args.command == "view":
            print(json.dumps(machine.resolver.view(args.partnership), indent=2, sort_keys=True))
            return 0
    except As2Error as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
