from __future__ import annotations

import logging
from typing import Optional

from listingcore.app.core.settings import settings

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for driver scripts; library code only calls getLogger."""
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
