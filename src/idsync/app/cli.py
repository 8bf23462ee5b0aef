from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from idsync.app.runner import open_services, serve
from idsync.features.session_sync.service import has_meaningful_data

DEFAULT_CONFIG = "config/idsync.yaml"


def _identity(args: argparse.Namespace) -> int:
    services = open_services(args.config)
    try:
        reconciler = services.reconciler
        if args.action == "show":
            print(services.provider.get_id())
        elif args.action == "reconcile":
            print(reconciler.reconcile())
        elif args.action == "rollback":
            for label in reconciler.rollback():
                print(f"restored {label}")
        elif args.action == "pre-migration":
            print(json.dumps(reconciler.pre_migration_values(), sort_keys=True))
    finally:
        services.close()
    return 0


def _sync(args: argparse.Namespace) -> int:
    fragment = json.loads(Path(args.fragment).read_text())
    if not isinstance(fragment, dict):
        print("fragment must be a JSON object", file=sys.stderr)
        return 2

    services = open_services(args.config)
    try:
        if not args.force and not has_meaningful_data(
            fragment, ignore=services.cfg.merge.freshness_fields
        ):
            print(json.dumps({"success": True, "merged": False, "reason": "incoming_empty"}))
            return 0
        resp = services.sync.sync(args.profile, fragment, sync_reason=args.reason)
    finally:
        services.close()

    print(json.dumps(resp.body))
    return 0 if resp.status_code == 200 else 1


def _token(args: argparse.Namespace) -> int:
    services = open_services(args.config)
    try:
        print(services.authenticator.issue(args.profile))
    finally:
        services.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="idsync")
    parser.add_argument("--config", default=DEFAULT_CONFIG)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Serve the session sync API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)

    p_id = sub.add_parser("identity", help="Visitor identity operations")
    p_id.add_argument("action", choices=["show", "reconcile", "rollback", "pre-migration"])

    p_sync = sub.add_parser("sync", help="Merge a JSON fragment into a profile's session record")
    p_sync.add_argument("--profile", required=True)
    p_sync.add_argument("--fragment", required=True, help="path to a JSON object")
    p_sync.add_argument("--reason", default="cli")
    p_sync.add_argument("--force", action="store_true", help="sync even if only freshness fields")

    p_token = sub.add_parser("token", help="Mint a dev bearer token for a profile")
    p_token.add_argument("--profile", required=True)

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        serve(args.config, host=args.host, port=args.port)
        return 0
    if args.cmd == "identity":
        return _identity(args)
    if args.cmd == "sync":
        return _sync(args)
    if args.cmd == "token":
        return _token(args)

    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
