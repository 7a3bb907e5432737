"""Command-line utilities for inspecting and flushing the proxy cache."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Optional

import httpx

API_PREFIX = "/api/contentful"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or flush the CMS proxy cache")
    parser.add_argument("--base-url", required=True, help="Proxy base URL, e.g. http://localhost:3000")
    parser.add_argument("--token", help="Admin bearer token, when the proxy requires one")

    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="Show cache hit/miss counters")
    stats_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    clear_parser = subparsers.add_parser("clear", help="Drop every cached response")
    clear_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    return parser.parse_args(argv)


def _headers(token: Optional[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


async def fetch_stats(base_url: str, token: Optional[str]) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(f"{base_url.rstrip('/')}{API_PREFIX}/cache/stats", headers=_headers(token))
        response.raise_for_status()
        return response.json()


async def clear_cache(base_url: str, token: Optional[str]) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.delete(f"{base_url.rstrip('/')}{API_PREFIX}/cache", headers=_headers(token))
        response.raise_for_status()
        return response.json()


def hit_ratio(stats: dict[str, Any]) -> str:
    hits = int(stats.get("hits", 0))
    total = hits + int(stats.get("misses", 0))
    if not total:
        return "-"
    return f"{hits / total:.1%}"


async def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    if args.command == "stats":
        payload = await fetch_stats(args.base_url, args.token)
        if args.json:
            print(json.dumps(payload, indent=2))
            return
        stats = payload.get("stats", {})
        print(f"Hits: {stats.get('hits', 0)}")
        print(f"Misses: {stats.get('misses', 0)}")
        print(f"Keys: {stats.get('keys', 0)}")
        print(f"Hit ratio: {hit_ratio(stats)}")
    elif args.command == "clear":
        payload = await clear_cache(args.base_url, args.token)
        if args.json:
            print(json.dumps(payload, indent=2))
        else:
            print(f"{payload.get('message', 'Cache cleared')} at {payload.get('timestamp', '-')}")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
