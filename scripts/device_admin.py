#!/usr/bin/env python3
"""Inspect and manage devices and tokens from the command line.

Usage:
    python scripts/device_admin.py list [--status pending] [--page 1] [--per-page 20]
    python scripts/device_admin.py show DEVICE_ID
    python scripts/device_admin.py accept DEVICE_ID
    python scripts/device_admin.py reject DEVICE_ID
    python scripts/device_admin.py reset DEVICE_ID
    python scripts/device_admin.py revoke-token TOKEN_ID

All commands accept --tenant to select the tenant scope.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    MEMORY_STATE_PATH: state file for the memory store
    REDIS_URL: Redis for the revoked-token denylist (optional here)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _device_dict(device) -> dict:
    return {
        "id": device.id,
        "identity_data": device.identity_data,
        "status": device.status,
        "tenant_id": device.tenant_id,
        "created_at": device.created_at.isoformat(),
        "updated_at": device.updated_at.isoformat(),
    }


async def run_command(args: argparse.Namespace) -> dict | list:
    # Import here to avoid loading config before env vars are set
    from fleetauth.service.pagination import page_request, paginate
    from fleetauth.service.runtime import get_runtime

    runtime = get_runtime()
    tenant_id = args.tenant if args.tenant is not None else runtime.settings.default_tenant_id
    registry = runtime.registry
    try:
        if args.command == "list":
            paging = page_request(
                args.page,
                args.per_page,
                default_per_page=runtime.settings.default_per_page,
                max_per_page=runtime.settings.max_per_page,
            )
            fetched = await registry.list_devices(
                tenant_id=tenant_id,
                skip=paging.skip,
                limit=paging.limit,
                status=args.status,
            )
            page = paginate(paging, fetched)
            return {
                "items": [_device_dict(d) for d in page.items],
                "has_next": page.has_next,
                "next_page": page.next_page,
            }
        if args.command == "show":
            return _device_dict(await registry.get_device(args.id, tenant_id=tenant_id))
        if args.command == "accept":
            return _device_dict(await registry.accept(args.id, tenant_id=tenant_id))
        if args.command == "reject":
            return _device_dict(await registry.reject(args.id, tenant_id=tenant_id))
        if args.command == "reset":
            return _device_dict(await registry.reset(args.id, tenant_id=tenant_id))
        if args.command == "revoke-token":
            token = await runtime.tokens.revoke(args.id, tenant_id=tenant_id)
            return {"token_id": token.id, "device_id": token.device_id, "revoked": token.revoked}
        raise ValueError(f"unknown command {args.command}")
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage devices and tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", default=None, help="Tenant scope (defaults to DEFAULT_TENANT_ID)")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List devices")
    list_cmd.add_argument("--status", default=None, choices=["pending", "accepted", "rejected"])
    list_cmd.add_argument("--page", type=int, default=None)
    list_cmd.add_argument("--per-page", dest="per_page", type=int, default=None)

    for name, help_text in (
        ("show", "Show one device"),
        ("accept", "Accept a device"),
        ("reject", "Reject a device and revoke its tokens"),
        ("reset", "Return a device to pending and revoke its tokens"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("id", help="Device id")

    revoke = sub.add_parser("revoke-token", help="Revoke a token")
    revoke.add_argument("id", help="Token id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)", file=sys.stderr)
    # revocations still reach the store without Redis
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from fleetauth.service.errors import ServiceError

    try:
        result = asyncio.run(run_command(args))
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
