#!/usr/bin/env python3
"""
mock_platform.py — Operator CLI for the mock add-on platform.

Runs the mock backend over HTTP, sends one in-process request against the
durable state, or inspects/wipes that state.

Usage:
    uv run python scripts/mock_platform.py serve [--host 127.0.0.1] [--port 8767]
    uv run python scripts/mock_platform.py request GET /apps/shop/addons --api-key KEY
    uv run python scripts/mock_platform.py request POST /apps/shop/addons --api-key KEY \
        --body '{"plan": {"name": "heroku-postgresql:hobby-dev"}}'
    uv run python scripts/mock_platform.py show [--tenant KEY]
    uv run python scripts/mock_platform.py reset --yes

State location: ADDON_MOCK_STATE_PATH, or ADDON_MOCK_STATE_BUCKET/_KEY for S3.
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import os
import signal
import sys
from typing import Any

import uvicorn
from addon_api.handler import dispatch
from addon_api.router import Request
from addon_api.server import create_app
from addon_store import CorruptDurableState, TenantStore, blob_store_from_env, scoped_store
from addon_store.store import BlobStore

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8767

logger = logging.getLogger("mock-platform")


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _exit_on_sigterm(signum: int, _frame: Any) -> None:
    # SystemExit unwinds through scoped_store, so state is still flushed.
    raise SystemExit(128 + signum)


def basic_auth_header(api_key: str) -> str:
    token = base64.b64encode(f":{api_key}".encode()).decode("ascii")
    return f"Basic {token}"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mock add-on platform operator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve the mock platform over HTTP")
    serve.add_argument("--host", default=os.environ.get("ADDON_MOCK_HOST", DEFAULT_HOST))
    serve.add_argument(
        "--port", type=int, default=int(os.environ.get("ADDON_MOCK_PORT", DEFAULT_PORT))
    )

    request = sub.add_parser("request", help="Dispatch one request in-process")
    request.add_argument("method")
    request.add_argument("path")
    request.add_argument("--api-key", required=True, help="Tenant API key")
    request.add_argument("--body", default=None, help="Request body (JSON)")

    show = sub.add_parser("show", help="Print persisted state")
    show.add_argument("--tenant", default=None, help="Only this tenant's API key")

    reset = sub.add_parser("reset", help="Wipe persisted state")
    reset.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser.parse_args(argv)


def run_request(
    args: argparse.Namespace,
    blob_store: BlobStore,
    path: str,
) -> int:
    request = Request(
        method=args.method,
        path=args.path,
        headers={"Authorization": basic_auth_header(args.api_key)},
        body=args.body,
    )
    with scoped_store(blob_store, path) as store:
        response = dispatch(request, store)
    print(json.dumps({"status": response.status, "body": response.body}, indent=2))
    return 0 if response.status < 400 else 1


def run_show(args: argparse.Namespace, blob_store: BlobStore, path: str) -> int:
    store = TenantStore(blob_store, path)
    if args.tenant is not None:
        bundle = store.peek(args.tenant)
        if bundle is None:
            print(f"error: no state for tenant {args.tenant!r}", file=sys.stderr)
            return 1
        payload: dict[str, Any] = bundle.to_dict()
    else:
        bundles = {key: store.peek(key) for key in store.tenant_keys()}
        payload = {key: b.to_dict() for key, b in bundles.items() if b is not None}
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def run_reset(args: argparse.Namespace, blob_store: BlobStore, path: str) -> int:
    if not args.yes:
        print("error: reset deletes all mock state; pass --yes to confirm", file=sys.stderr)
        return 1
    blob_store.write_blob(path, b"{}")
    logger.info("Mock state wiped | path=%s", path)
    return 0


def run_serve(args: argparse.Namespace, blob_store: BlobStore, path: str) -> int:
    uvicorn.run(
        create_app(blob_store, path),
        host=args.host,
        port=args.port,
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
    return 0


_COMMANDS = {
    "request": run_request,
    "show": run_show,
    "reset": run_reset,
    "serve": run_serve,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging()
    signal.signal(signal.SIGTERM, _exit_on_sigterm)
    blob_store, path = blob_store_from_env()
    try:
        return _COMMANDS[args.command](args, blob_store, path)
    except CorruptDurableState as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
