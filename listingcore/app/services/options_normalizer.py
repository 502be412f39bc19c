from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from listingcore.app.catalog.option_catalog import OptionCatalog
from listingcore.app.catalog.standard_equipment import StandardEquipmentCatalog, default_standard_equipment
from listingcore.app.core.settings import settings
from listingcore.app.services.options_client import OptionsServiceError, OptionsTextClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedOptions:
    names: FrozenSet[str] = frozenset()
    option_ids: Dict[str, int] = field(default_factory=dict)
    unmatched: Tuple[str, ...] = ()
    degraded: bool = False


class OptionsNormalizer:
    """Free-text options -> canonical catalog names, minus standard equipment.

    Names the catalog does not know are reported back and logged; the catalog
    itself is never written to here.
    """

    def __init__(
        self,
        client: OptionsTextClient,
        catalog: OptionCatalog,
        standard_equipment: Optional[StandardEquipmentCatalog] = None,
        *,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.catalog = catalog
        self.standard_equipment = standard_equipment or default_standard_equipment()
        # outer bound covering every retry of one call
        self.timeout = timeout if timeout is not None else settings.options_timeout * max(1, settings.options_max_attempts)

    async def normalize(self, options_text: Optional[str]) -> NormalizedOptions:
        if not options_text or not options_text.strip():
            return NormalizedOptions()
        try:
            raw_names = await asyncio.wait_for(self._client.extract_option_names(options_text), timeout=self.timeout)
        except (OptionsServiceError, asyncio.TimeoutError) as exc:
            logger.warning("options normalization unavailable, skipping: %s", exc)
            return NormalizedOptions(degraded=True)
        return self.match(raw_names)

    def match(self, raw_names: Sequence[str]) -> NormalizedOptions:
        option_ids: Dict[str, int] = {}
        unmatched: List[str] = []
        for raw in raw_names:
            entry = self.catalog.match(raw)
            if entry is None:
                if raw not in unmatched:
                    unmatched.append(raw)
                continue
            option_ids[entry.name] = entry.id
        if unmatched:
            logger.warning("options not in catalog: %s", ", ".join(unmatched))
        return NormalizedOptions(names=frozenset(option_ids), option_ids=option_ids, unmatched=tuple(unmatched))

    def include(self, options: NormalizedOptions, raw_names: Sequence[str]) -> NormalizedOptions:
        """Add options known from elsewhere in the listing, such as a sample paint colour."""
        extra = self.match(raw_names)
        option_ids = {**options.option_ids, **extra.option_ids}
        unmatched = list(options.unmatched)
        unmatched.extend(name for name in extra.unmatched if name not in unmatched)
        return NormalizedOptions(
            names=frozenset(option_ids),
            option_ids=option_ids,
            unmatched=tuple(unmatched),
            degraded=options.degraded,
        )

    def filter_standard(
        self,
        options: NormalizedOptions,
        model: Optional[str],
        trim: Optional[str],
        generation: Optional[str] = None,
        year: Optional[int] = None,
    ) -> NormalizedOptions:
        kept = self.standard_equipment.filter_standard(sorted(options.names), model, trim, generation, year)
        return NormalizedOptions(
            names=frozenset(kept),
            option_ids={name: options.option_ids[name] for name in kept},
            unmatched=options.unmatched,
            degraded=options.degraded,
        )
