#!/usr/bin/env python3
"""Emit a CS_MACHINE_API_KEYS_JSON value for one or more machine modules."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets

SCOPES = ("sync:run", "sync:read", "sync:admin")


def render_entry(*, api_key: str, scopes: list[str]) -> dict[str, object]:
    return {
        "key_hash": hashlib.sha256(api_key.encode("utf-8")).hexdigest(),
        "scopes": sorted(set(scopes)),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Hash a machine API key for the sync API configuration.")
    parser.add_argument("module_id", help="Value the caller sends as X-Module-Id")
    parser.add_argument("--api-key", help="Key to hash; a random key is generated when omitted")
    parser.add_argument(
        "--scope",
        action="append",
        choices=SCOPES,
        dest="scopes",
        help="Scope to grant (repeatable); defaults to sync:run and sync:read",
    )
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    scopes = args.scopes or ["sync:run", "sync:read"]
    if not args.api_key:
        print(f"# generated api key for {args.module_id}: {api_key}")
    print(json.dumps({args.module_id: render_entry(api_key=api_key, scopes=scopes)}))


if __name__ == "__main__":
    main()
