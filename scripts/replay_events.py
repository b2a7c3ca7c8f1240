#!/usr/bin/env python3
"""
Replay script. Re-publishes content.created events so the fan-out worker
rebuilds timelines that missed writes (partial fan-out, Redis flush, new
follower timelines after a worker outage).

Run against a live API:
  python scripts/replay_events.py --api-url http://localhost:8000 --hours 24

Then page through the global feed to check the timelines are populated:
  python scripts/replay_events.py --api-url http://localhost:8000 --check
"""
import argparse
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass


@dataclass
class ApiClient:
    base_url: str

    def post(self, path: str, data: dict) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode()
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method="POST"
        )
        try:
            with urllib.request.urlopen(req, timeout=30) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on POST {path}: {e.read().decode()}")
            return {}

    def get(self, path: str, params: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        req = urllib.request.Request(url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on GET {path}")
            return {}


def replay(client: ApiClient, hours: float, batch: int) -> None:
    since_ms = int((time.time() - hours * 3600) * 1000)
    print(f"Replaying content.created events since {since_ms} ...")
    result = client.post("/timelines/replay", {"since_ms": since_ms, "limit": batch})
    if not result:
        print("  ✗ Replay request failed")
        return
    print(f"  ✓ {result['published']}/{result['found']} events published")


def check(client: ApiClient, limit: int) -> None:
    """Walk the For You feed to the end and report how many ids it holds."""
    print("Paging through the For You feed ...")
    cursor = None
    seen: set[int] = set()
    pages = 0
    while True:
        params = {"type": "For You", "limit": limit}
        if cursor is not None:
            params["cursor"] = cursor
        page = client.get("/feed/page", params)
        if not page:
            break
        pages += 1
        seen.update(page.get("posts", []))
        cursor = page.get("nextCursor")
        if cursor is None:
            break
    print(f"  ✓ {len(seen)} distinct ids over {pages} page(s)")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rebuild timelines by replaying events")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--hours", type=float, default=24.0, help="How far back to replay")
    parser.add_argument("--batch", type=int, default=1000, help="Max events per replay")
    parser.add_argument("--check", action="store_true", help="Only page through the feed")
    args = parser.parse_args()

    api = ApiClient(args.api_url)
    if args.check:
        check(api, limit=50)
    else:
        replay(api, args.hours, args.batch)
