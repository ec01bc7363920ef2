from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Traefik Docker HTTP Provider CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Provider base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("config", help="Show the dynamic configuration currently served")
    sub.add_parser("status", help="Show snapshot and source status")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    try:
        if args.cmd == "config":
            r = requests.get(f"{base}/dynamic_configuration", timeout=10)
            _print(r.json())
            if r.ok:
                print(f"# generation {r.headers.get('X-Config-Generation')}", file=sys.stderr)
            return 0 if r.ok else 1

        if args.cmd == "status":
            r = requests.get(f"{base}/status", timeout=10)
            _print(r.json())
            return 0 if r.ok else 1

        if args.cmd == "events":
            r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
            _print(r.json())
            return 0 if r.ok else 1
    except requests.RequestException as e:
        print(f"Cannot reach {base}: {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
