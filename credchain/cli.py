"""
Credchain command line.

Usage:
    credchain serve [--host 0.0.0.0] [--port 8000]
    credchain health
    credchain queue-status
    credchain drain-queue
    credchain verify (--file PATH [--claimed-hash H] | --hash H | --qr PAYLOAD)

Exit codes: 0 success, 1 verification not authentic / not ready,
64 configuration error, 70 runtime error.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from pydantic import ValidationError as SettingsValidationError

from credchain import __version__
from credchain.core.config import Settings
from credchain.core.errors import ConfigurationError, CredchainError
from credchain.core.logging_config import setup_logging
from credchain.services.custody import CustodyServices, build_services
from credchain.services.verification import Evidence

EXIT_OK = 0
EXIT_NEGATIVE = 1
EXIT_CONFIG = 64
EXIT_RUNTIME = 70


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="credchain", description="Credchain document custody service")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", type=Path, default=None, help="Read settings from this .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("health", help="Probe database, storage providers and ledger")
    sub.add_parser("queue-status", help="Show the upload retry queue")
    sub.add_parser("drain-queue", help="Run one pass over the upload retry queue")

    verify = sub.add_parser("verify", help="Verify a document")
    evidence = verify.add_mutually_exclusive_group(required=True)
    evidence.add_argument("--file", type=Path, help="Document file to verify")
    evidence.add_argument("--hash", dest="document_hash", help="Document hash (0x + 64 hex)")
    evidence.add_argument("--qr", dest="qr_payload", help="Scanned QR payload")
    verify.add_argument("--claimed-hash", help="Hash the file claims to be (with --file)")
    return parser


def load_settings(env_file: Optional[Path]) -> Settings:
    if env_file is not None:
        if not env_file.is_file():
            raise ConfigurationError(f"Env file not found: {env_file}")
        return Settings(_env_file=env_file)
    return Settings()


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _with_services(settings: Settings, action: Callable[[CustodyServices], Awaitable[int]]) -> int:
    services = build_services(settings)
    await services.startup(start_drainer=False)
    try:
        return await action(services)
    finally:
        await services.shutdown()


async def _health(services: CustodyServices) -> int:
    report = await services.custody.health()
    _print(report)
    return EXIT_OK if report["status"] == "ready" else EXIT_NEGATIVE


async def _queue_status(services: CustodyServices) -> int:
    _print(services.custody.queue_status())
    return EXIT_OK


async def _drain_queue(services: CustodyServices) -> int:
    report = await services.custody.drain_queue()
    _print(report.to_dict())
    return EXIT_OK


def _verify(args: argparse.Namespace) -> Callable[[CustodyServices], Awaitable[int]]:
    if args.file is not None:
        evidence = Evidence.upload(args.file.read_bytes(), claimed_hash=args.claimed_hash)
    elif args.qr_payload:
        evidence = Evidence.qr(args.qr_payload)
    else:
        evidence = Evidence.hash(args.document_hash)

    async def action(services: CustodyServices) -> int:
        outcome = await services.custody.verify(evidence, user_agent=f"credchain-cli/{__version__}")
        _print(outcome.to_dict())
        return EXIT_OK if outcome.authentic else EXIT_NEGATIVE

    return action


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from credchain.main import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
        if args.command == "serve":
            return _serve(settings, args.host, args.port)

        setup_logging(settings.log_level, settings.log_json, settings.log_file, stream=sys.stderr)
        if args.command == "verify" and args.claimed_hash and args.file is None:
            parser.error("--claimed-hash requires --file")
        actions = {
            "health": _health,
            "queue-status": _queue_status,
            "drain-queue": _drain_queue,
        }
        action = _verify(args) if args.command == "verify" else actions[args.command]
        return asyncio.run(_with_services(settings, action))
    except (ConfigurationError, SettingsValidationError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except CredchainError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return EXIT_RUNTIME
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_RUNTIME


if __name__ == "__main__":
    sys.exit(main())
