#!/usr/bin/env python3
"""
Operate the requisition backend from the command line.

Subcommands:
  init-db                 create the documents table; optionally seed users
                          and an initial inventory ledger from a YAML file
  invoke ACTION [PARAMS]  run one action; PARAMS is a JSON object
  release-expired         run the reservation timeout sweep
  deliver-notifications   drain the notification outbox once

Usage:
  python3 scripts/requisitions.py --config backend.yaml init-db --seed seed.yaml
  python3 scripts/requisitions.py invoke get_stage_counts
  python3 scripts/requisitions.py invoke approve_request '{"id": "REQ-000001", "user": "boss@plant.example"}'
  python3 scripts/requisitions.py release-expired --hours 48

The database URL comes from the config file, or REQUISITION_DATABASE_URL.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Requisition backend operations")
    p.add_argument("--config", help="Backend YAML config (default: packaged defaults)")
    p.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    sub = p.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-db", help="Create tables and optionally seed data")
    init.add_argument("--seed", help="YAML file with 'users' and/or 'inventory' sections")

    inv = sub.add_parser("invoke", help="Run one action")
    inv.add_argument("action")
    inv.add_argument("params", nargs="?", default="{}", help="JSON object of parameters")

    rel = sub.add_parser("release-expired", help="Release reservations older than the timeout")
    rel.add_argument("--hours", type=float, default=None, help="Override the configured timeout")

    sub.add_parser("deliver-notifications", help="Drain pending notifications once")
    return p.parse_args(argv)


def _seed(backend, path: str) -> None:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    users = data.get("users") or []
    if users:
        created = backend.seed_users(users)
        print(f"  users created: {created}")
    inventory = data.get("inventory")
    if inventory:
        result = backend.invoke("save_inventory", {"data": inventory, "user": "seed"})
        if result["result"] != "success":
            raise SystemExit(f"  ERROR: {result['error']}")
        print(f"  inventory saved, version {result['version']}")


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from requisition_config import get_active_config
    from requisition_kernel.logging_config import configure_logging
    from requisition_services.backend import RequisitionBackend

    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        config = get_active_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    with RequisitionBackend(config).init(create_tables=args.command == "init-db") as backend:
        if args.command == "init-db":
            print("  tables ready")
            if args.seed:
                _seed(backend, args.seed)
            return 0

        if args.command == "invoke":
            try:
                params = json.loads(args.params)
            except json.JSONDecodeError as exc:
                print(f"  ERROR: params must be a JSON object: {exc}", file=sys.stderr)
                return 1
            if not isinstance(params, dict):
                print("  ERROR: params must be a JSON object", file=sys.stderr)
                return 1
            result = backend.invoke(args.action, params)
            print(json.dumps(result, indent=2, default=str))
            return 0 if result.get("result") == "success" else 2

        if args.command == "release-expired":
            params = {} if args.hours is None else {"hours": args.hours}
            result = backend.invoke("release_expired_reservations", params)
            print(json.dumps(result, indent=2))
            return 0 if result.get("result") == "success" else 2

        drained = backend.deliver_notifications()
        print(f"  processed: {len(drained.outcomes)}  sent: {drained.sent}")
        for outcome in drained.outcomes:
            if outcome.error:
                print(f"  {outcome.queue_key} {outcome.event_type}: {outcome.status} ({outcome.error})")
        return 0


if __name__ == "__main__":
    sys.exit(main())
