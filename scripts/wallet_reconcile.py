"""Fetch and print the wallet reconciliation report JSON."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for wallet balance checks."""

    parser = argparse.ArgumentParser(description="Fetch wallet reconciliation report endpoint.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.api_url}/wallet/reconciliation",
        params={"limit": args.limit},
        headers={"X-Api-Key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["mismatched_count"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
