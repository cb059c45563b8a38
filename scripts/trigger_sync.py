#!/usr/bin/env python3
"""Trigger a sync job or print its latest progress from the command line."""

from __future__ import annotations

import argparse
import json
import os
import sys

import httpx


def main() -> int:
    parser = argparse.ArgumentParser(description="Call the catalog sync API with a machine credential.")
    parser.add_argument("job", help="Job name, e.g. ships-sync or news-sync")
    parser.add_argument("--base-url", default=os.getenv("CS_SCHEDULER_API_BASE_URL", "http://localhost:8000"))
    parser.add_argument("--module-id", default=os.getenv("CS_SCHEDULER_MODULE_ID", "sync-scheduler"))
    parser.add_argument("--api-key", default=os.getenv("CS_SCHEDULER_API_KEY"))
    parser.add_argument("--force", action="store_true", help="Reap zombies first and rewrite unchanged records")
    parser.add_argument("--progress", action="store_true", help="Print the latest progress instead of running")
    parser.add_argument("--timeout", type=float, default=900.0)
    args = parser.parse_args()

    if not args.api_key:
        parser.error("--api-key or CS_SCHEDULER_API_KEY is required")

    headers = {"X-Module-Id": args.module_id, "X-API-Key": args.api_key}
    base_url = args.base_url.rstrip("/")
    with httpx.Client(timeout=args.timeout, headers=headers) as client:
        if args.progress:
            response = client.get(f"{base_url}/sync/{args.job}/progress")
        else:
            response = client.post(f"{base_url}/sync/{args.job}/run", json={"force": args.force, "auto_sync": False})

    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text}
    print(json.dumps(body, indent=2, sort_keys=True))
    return 0 if response.status_code < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
