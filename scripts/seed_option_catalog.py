#!/usr/bin/env python3
"""Append canonical option names to the option catalog.

Usage:
  python scripts/seed_option_catalog.py --input ./data/option_catalog.yaml
  python scripts/seed_option_catalog.py --input ./data/option_catalog.yaml --migrate

Existing names are left untouched; the catalog only grows.
"""
import argparse
import logging
import sys
from pathlib import Path

import yaml
from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from listingcore.app.core.log_config import configure_logging  # noqa: E402
from listingcore.app.core.settings import settings  # noqa: E402
from listingcore.app.db.store import SqlAlchemyListingStore  # noqa: E402

logger = logging.getLogger("seed_option_catalog")


def load_entries(path: Path):
    with open(path, "r", encoding="utf-8") as fh:
        payload = yaml.safe_load(fh) or {}
    entries = payload.get("options") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'options' must be a list")
    return [entry if isinstance(entry, dict) else {"name": str(entry)} for entry in entries]


def run_migrations() -> None:
    alembic_cfg = AlembicConfig(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    alembic_command.upgrade(alembic_cfg, "head")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--input", type=Path, default=ROOT / "data" / "option_catalog.yaml")
    parser.add_argument("--migrate", action="store_true", help="run alembic upgrade head first")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    configure_logging(args.log_level)
    if args.migrate:
        run_migrations()
    entries = load_entries(args.input)
    added = SqlAlchemyListingStore().add_catalog_options(entries)
    logger.info("%d of %d catalog entries were new", added, len(entries))
    return 0


if __name__ == "__main__":
    sys.exit(main())
