#!/usr/bin/env python3
"""
Blue-green deployment orchestrator CLI

Usage:
    python scripts/bluegreen_cli.py deploy secondary v1.4.0
    python scripts/bluegreen_cli.py migrate secondary --version v1.4.0 --steps 10,50,100
    python scripts/bluegreen_cli.py canary secondary --percentage 10
    python scripts/bluegreen_cli.py switch primary
    python scripts/bluegreen_cli.py rollback
    python scripts/bluegreen_cli.py status
    python scripts/bluegreen_cli.py history --limit 20
    python scripts/bluegreen_cli.py cleanup primary
    python scripts/bluegreen_cli.py monitor
    python scripts/bluegreen_cli.py serve --port 8090

Exit codes:
    0 = operation succeeded (or was a no-op)
    1 = operation rejected or failed
"""
import argparse
import json
import sys
import time

from bluegreen.config import load_config
from bluegreen.controller import build_controller
from bluegreen.logger import get_logger
from bluegreen.models import OperationResult

# ANSI color codes
GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BOLD = '\033[1m'
RESET = '\033[0m'


def _steps(value: str):
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"steps must be comma-separated integers, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Blue-green deployment orchestrator")
    parser.add_argument("--env", default=None, help="config environment (dev/prod); defaults to APP_ENV")
    parser.add_argument("--config", default=None, help="path to config.yaml")
    parser.add_argument("--json", action="store_true", help="print raw JSON results")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="deploy a version to an idle environment")
    p.add_argument("environment")
    p.add_argument("version")

    p = sub.add_parser("migrate", help="gradually migrate traffic to an environment")
    p.add_argument("target")
    p.add_argument("--version", default=None, help="deploy this version to the target first")
    p.add_argument("--steps", type=_steps, default=None, help="e.g. 25,50,75,100")

    p = sub.add_parser("canary", help="hold a small share of traffic on an environment")
    p.add_argument("target")
    p.add_argument("--version", default=None)
    p.add_argument("--percentage", type=int, default=None)

    p = sub.add_parser("switch", help="send all traffic to an environment at once")
    p.add_argument("target")

    sub.add_parser("rollback", help="restore the routing from before the last migration")
    sub.add_parser("abort", help="abort the running migration")
    sub.add_parser("status", help="show traffic, environments and the latest plan")

    p = sub.add_parser("history", help="show recent deployment history")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("cleanup", help="stop an environment that serves no traffic")
    p.add_argument("environment")

    sub.add_parser("monitor", help="run the continuous monitor in the foreground")

    p = sub.add_parser("serve", help="run the operator HTTP API")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8090)
    return parser


def print_result(result: OperationResult, as_json: bool = False) -> int:
    if as_json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        color = GREEN if result.ok else (YELLOW if result.outcome.value == "rolled_back" else RED)
        print(f"{BOLD}{result.operation}{RESET}: {color}{result.outcome.value.upper()}{RESET} {result.message}")
        if result.revision is not None:
            print(f"  traffic revision: {result.revision}")
        if result.rollback:
            print(f"  rollback: {result.rollback}")
    return 0 if result.ok else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(env=args.env, path=args.config)
    get_logger("bluegreen", config.log_level, str(config.state_path))
    controller = build_controller(config)

    try:
        if args.command == "deploy":
            return print_result(controller.deploy(args.environment, args.version), args.json)
        if args.command == "migrate":
            return print_result(controller.gradual_migrate(args.target, args.version, args.steps), args.json)
        if args.command == "canary":
            return print_result(controller.canary(args.target, args.version, args.percentage), args.json)
        if args.command == "switch":
            return print_result(controller.direct_switch(args.target), args.json)
        if args.command == "rollback":
            return print_result(controller.rollback(), args.json)
        if args.command == "abort":
            return print_result(controller.abort(wait=True), args.json)
        if args.command == "cleanup":
            return print_result(controller.cleanup(args.environment), args.json)
        if args.command == "status":
            print(json.dumps(controller.status(), indent=2))
            return 0
        if args.command == "history":
            for entry in controller.history_entries(args.limit):
                print(
                    f"{entry.timestamp.isoformat()}  {entry.operation:<18} {entry.outcome.value:<12} "
                    f"{getattr(entry.from_environment, 'value', '-')} -> {getattr(entry.to_environment, 'value', '-')}  "
                    f"{entry.detail or ''}"
                )
            return 0
        if args.command == "monitor":
            controller.monitor.start()
            print(f"Monitoring every {config.monitor.interval_seconds}s; Ctrl-C to stop")
            try:
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                return 0
        if args.command == "serve":
            import uvicorn
            from service.app import create_app

            controller.reconcile()
            uvicorn.run(create_app(controller), host=args.host, port=args.port)
            return 0
    finally:
        controller.shutdown()
    return 1


if __name__ == "__main__":
    sys.exit(main())
