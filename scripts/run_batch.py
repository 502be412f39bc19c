#!/usr/bin/env python3
"""Run a batch of scraped listings through enrichment, options normalization and identity resolution.

Usage:
  python scripts/run_batch.py --input ./data/scrapes/bat_2024-06-01.csv
  python scripts/run_batch.py --input ./data/scrapes/batch.json --concurrency 4 --unmatched-out ./data/unmatched.csv

Input columns: source, source_url, title, vin, year, price, mileage,
exterior_color, interior_color, location, options_text, sold_date, scraped_at.
Options are only normalized when OPTIONS_API_KEY is configured.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from listingcore.app.catalog.option_catalog import OptionCatalog  # noqa: E402
from listingcore.app.core.log_config import configure_logging  # noqa: E402
from listingcore.app.core.rate_limit import TokenBucket  # noqa: E402
from listingcore.app.core.records import ListingCandidate  # noqa: E402
from listingcore.app.core.settings import settings  # noqa: E402
from listingcore.app.db.store import SqlAlchemyListingStore  # noqa: E402
from listingcore.app.services.options_client import HttpOptionsTextClient  # noqa: E402
from listingcore.app.services.options_normalizer import OptionsNormalizer  # noqa: E402
from listingcore.app.services.pipeline import ListingPipeline  # noqa: E402

logger = logging.getLogger("run_batch")


def read_frame(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path, dtype={"vin": str, "source_url": str})
    if suffix in {".json", ".jsonl"}:
        return pd.read_json(path, lines=suffix == ".jsonl", dtype={"vin": str})
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path, dtype={"vin": str})
    raise ValueError(f"Unsupported input format: {path}")


def load_candidates(df: pd.DataFrame) -> List[ListingCandidate]:
    df = df.rename(columns=lambda col: str(col).strip().lower())
    records = df.astype(object).where(pd.notna(df), None).to_dict(orient="records")
    candidates = []
    for idx, row in enumerate(records):
        try:
            candidates.append(ListingCandidate.from_mapping(row))
        except ValueError as exc:
            logger.warning("row %d skipped: %s", idx + 1, exc)
    return candidates


async def run(args: argparse.Namespace) -> int:
    candidates = load_candidates(read_frame(args.input))
    store = SqlAlchemyListingStore()

    client = None
    normalizer = None
    if settings.options_api_key:
        client = HttpOptionsTextClient(rate_limiter=TokenBucket(settings.options_rpm))
        normalizer = OptionsNormalizer(client, OptionCatalog(store.load_option_catalog()))
    else:
        logger.warning("OPTIONS_API_KEY not set, options will not be normalized")

    pipeline = ListingPipeline(store, normalizer)
    try:
        summary = await pipeline.run_batch(candidates, concurrency=args.concurrency)
    finally:
        if client is not None:
            await client.aclose()

    report = summary.as_dict()
    print(json.dumps(report, indent=2, default=str))
    if args.unmatched_out and summary.unmatched_options:
        frame = pd.DataFrame(
            sorted(summary.unmatched_options.items(), key=lambda item: (-item[1], item[0])),
            columns=["option", "count"],
        )
        frame.to_csv(args.unmatched_out, index=False)
        logger.info("wrote %d unmatched option names to %s", len(frame), args.unmatched_out)
    return 1 if summary.errored else 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--input", type=Path, required=True)
    parser.add_argument("--concurrency", type=int, default=1)
    parser.add_argument("--unmatched-out", type=Path, default=None)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    configure_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
