"""Expire every pending payment whose verification window has passed."""

import argparse

from gasmarket.common.db import SessionLocal
from gasmarket.common.logging import configure_logging
from gasmarket.services.api_gateway.main import build_marketplace


def main() -> None:
    """CLI entrypoint for the stale-payment sweep."""

    parser = argparse.ArgumentParser(description="Move overdue pending payments to expired.")
    parser.parse_args()

    configure_logging()
    expired = build_marketplace(SessionLocal).payments.expire_stale()
    print(f"expired={expired}")


if __name__ == "__main__":
    main()
