#!/usr/bin/env python3
"""Run the loyalty points expiry sweeps from a shell or cron.

Example:
    python tooling/scripts/run_points_expiry.py --tenant 3f1c... --skip-inactivity

Without ``--tenant`` every tenant is swept. Exits non-zero when any customer
failed so the cron wrapper can alert.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from loyalty_api.app import APP_VERSION
from loyalty_api.core.logging import configure_logging
from loyalty_api.core.settings import settings
from loyalty_api.db.session import async_session
from loyalty_api.jobs.loyalty import run_points_expiry


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire loyalty points")
    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        help="Tenant id to sweep (repeatable). Defaults to all tenants.",
    )
    parser.add_argument(
        "--skip-inactivity",
        action="store_true",
        help="Only expire dated transactions; leave inactive balances untouched.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Customers processed in parallel per tenant.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging(
        service_name="loyalty-cli",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_logs=settings.log_json,
    )
    summary = asyncio.run(
        run_points_expiry(
            session_factory=async_session,
            tenant_ids=args.tenants,
            concurrency=args.concurrency,
            include_inactivity=not args.skip_inactivity,
        )
    )
    logger.success(
        "Points expiry run completed",
        tenants=summary["tenants"],
        points_expired=summary["points_expired"],
        failures=summary["failures"],
    )
    return 1 if summary["failures"] else 0


if __name__ == "__main__":
    sys.exit(main())
