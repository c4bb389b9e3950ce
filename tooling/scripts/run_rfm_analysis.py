#!/usr/bin/env python3
"""Print an RFM segmentation of a tenant's active customers.

Example:
    python tooling/scripts/run_rfm_analysis.py 3f1c... --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from uuid import UUID

from loguru import logger

from loyalty_api.app import APP_VERSION
from loyalty_api.core.logging import configure_logging
from loyalty_api.core.settings import settings
from loyalty_api.db.session import async_session
from loyalty_api.services.loyalty import RFMAnalysis, RFMSegmentationService, segment_info


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Segment customers by recency, frequency and spend")
    parser.add_argument("tenant", type=UUID, help="Tenant id")
    parser.add_argument("--json", action="store_true", help="Emit one JSON document instead of a table.")
    return parser.parse_args()


async def _run(tenant_id: UUID) -> RFMAnalysis:
    async with async_session() as session:
        return await RFMSegmentationService(session).run_rfm_analysis(tenant_id)


def _print_table(analysis: RFMAnalysis) -> None:
    for row in analysis.customers:
        print(f"{row.name:<30} R{row.rfm.recency} F{row.rfm.frequency} M{row.rfm.monetary}  {row.segment.value}")
    print()
    for segment, count in sorted(analysis.segment_counts.items(), key=lambda item: -item[1]):
        info = segment_info(segment)
        print(f"{info.label:<22} {count:>5}  {info.action}")


def main() -> int:
    args = parse_args()
    configure_logging(
        service_name="loyalty-cli",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_logs=settings.log_json,
    )
    analysis = asyncio.run(_run(args.tenant))
    if args.json:
        payload = analysis.summary()
        payload["rows"] = [
            {
                "customer_id": str(row.customer_id),
                "name": row.name,
                "score": row.rfm.score,
                "segment": row.segment.value,
            }
            for row in analysis.customers
        ]
        print(json.dumps(payload, indent=2))
    else:
        _print_table(analysis)
    logger.success("RFM analysis completed", customers=len(analysis.customers))
    return 0


if __name__ == "__main__":
    sys.exit(main())
