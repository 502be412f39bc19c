from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from listingcore.app.catalog.colors import PAINT_TO_SAMPLE_OPTION
from listingcore.app.core.records import EnrichedListing, ListingCandidate
from listingcore.app.db.store import ListingStore, TransientStoreError
from listingcore.app.enrichment.field_inference import enrich
from listingcore.app.enrichment.mileage import MileagePolicy
from listingcore.app.enrichment.vin_decoder import clean_vin, decode
from listingcore.app.services.identity import IdentityResolver, Resolution, ResolutionResult
from listingcore.app.services.options_normalizer import NormalizedOptions, OptionsNormalizer

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 8


class UnionFind:
    """Disjoint-set data structure with path compression."""

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        if self.parent[x] != x:
            self.parent[x] = self.find(self.parent[x])
        return self.parent[x]

    def union(self, x: int, y: int) -> bool:
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x == root_y:
            return False
        if self.rank[root_x] < self.rank[root_y]:
            root_x, root_y = root_y, root_x
        self.parent[root_y] = root_x
        if self.rank[root_x] == self.rank[root_y]:
            self.rank[root_x] += 1
        return True

    def groups(self) -> Dict[int, List[int]]:
        clusters: Dict[int, List[int]] = defaultdict(list)
        for idx in range(len(self.parent)):
            clusters[self.find(idx)].append(idx)
        return clusters


def plan_lanes(candidates: Sequence[ListingCandidate]) -> List[List[int]]:
    """Group candidate indexes so any two sharing a source URL or VIN land in the same lane.

    Lanes keep input order internally and are ordered by their first member.
    """
    uf = UnionFind(len(candidates))
    first_seen: Dict[str, int] = {}
    for idx, candidate in enumerate(candidates):
        keys = [f"url:{candidate.source_url}"]
        vin = clean_vin(candidate.vin)
        if vin:
            keys.append(f"vin:{vin}")
        for key in keys:
            if key in first_seen:
                uf.union(first_seen[key], idx)
            else:
                first_seen[key] = idx
    return sorted((sorted(members) for members in uf.groups().values()), key=lambda lane: lane[0])


@dataclass
class ListingOutcome:
    source_url: str
    resolution: Optional[Resolution] = None
    listing_id: Optional[int] = None
    option_names: List[str] = field(default_factory=list)
    unmatched_options: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BatchSummary:
    new: int = 0
    updated: int = 0
    merged: int = 0
    relisted: int = 0
    errored: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_options: Counter = field(default_factory=Counter)
    outcomes: List[ListingOutcome] = field(default_factory=list)

    _COUNTERS = {
        Resolution.NEW: "new",
        Resolution.UPDATE: "updated",
        Resolution.DUPLICATE_MERGE: "merged",
        Resolution.RELIST: "relisted",
    }

    @property
    def processed(self) -> int:
        return self.new + self.updated + self.merged + self.relisted + self.errored

    def record(self, outcome: ListingOutcome) -> None:
        self.outcomes.append(outcome)
        self.unmatched_options.update(outcome.unmatched_options)
        if outcome.error is not None or outcome.resolution is None:
            self.errored += 1
            self.errors.append({"source_url": outcome.source_url, "error": outcome.error})
            return
        counter = self._COUNTERS[outcome.resolution]
        setattr(self, counter, getattr(self, counter) + 1)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "new": self.new,
            "updated": self.updated,
            "merged": self.merged,
            "relisted": self.relisted,
            "errored": self.errored,
            "errors": list(self.errors),
            "unmatched_options": dict(self.unmatched_options),
        }


class ListingPipeline:
    """Enrich, normalize options and resolve identity for scraped listings."""

    def __init__(
        self,
        store: ListingStore,
        options_normalizer: Optional[OptionsNormalizer] = None,
        *,
        resolver: Optional[IdentityResolver] = None,
        mileage_policy: Optional[MileagePolicy] = None,
    ):
        self.store = store
        self.options_normalizer = options_normalizer
        self.resolver = resolver or IdentityResolver(store)
        self.mileage_policy = mileage_policy or MileagePolicy.from_settings()

    def enrich(self, candidate: ListingCandidate) -> EnrichedListing:
        decoded = decode(candidate.vin, reference_year=candidate.reference_year) if clean_vin(candidate.vin) else None
        return enrich(candidate, decoded, policy=self.mileage_policy)

    async def _normalize_options(self, listing: EnrichedListing) -> NormalizedOptions:
        wanted = bool(listing.options_text) or listing.paint_to_sample
        if self.options_normalizer is None or not wanted:
            return NormalizedOptions(degraded=self.options_normalizer is None and wanted)
        options = NormalizedOptions()
        if listing.options_text:
            options = await self.options_normalizer.normalize(listing.options_text)
            options = self.options_normalizer.filter_standard(
                options, listing.model, listing.trim, listing.generation, listing.year
            )
        if listing.paint_to_sample and not options.degraded:
            options = self.options_normalizer.include(options, [PAINT_TO_SAMPLE_OPTION])
        return options

    def _resolve_and_store(self, listing: EnrichedListing, options: NormalizedOptions) -> ResolutionResult:
        result = self.resolver.resolve(listing)
        if result.adopt_options and not options.degraded:
            option_ids = list(options.option_ids.values())
            self.resolver.call_store(lambda: self.store.replace_option_associations(result.listing_id, option_ids))
        return result

    async def process(self, candidate: ListingCandidate) -> ListingOutcome:
        """Run one candidate end to end; store errors propagate to the caller."""
        listing = self.enrich(candidate)
        options = await self._normalize_options(listing)
        # blocking store calls and their retry backoff run on a worker thread;
        # once started they finish even if this task is cancelled
        result = await asyncio.to_thread(self._resolve_and_store, listing, options)
        flags = list(listing.flags) + list(result.notes)
        if options.degraded:
            flags.append("options-skipped")
        logger.info(
            "%s %s -> listing %s%s",
            result.resolution.value,
            candidate.source_url,
            result.listing_id,
            "" if result.changed else " (unchanged)",
        )
        return ListingOutcome(
            source_url=candidate.source_url,
            resolution=result.resolution,
            listing_id=result.listing_id,
            option_names=sorted(options.names),
            unmatched_options=list(options.unmatched),
            flags=flags,
        )

    async def _process_isolated(self, candidate: ListingCandidate) -> ListingOutcome:
        try:
            return await self.process(candidate)
        except TransientStoreError as exc:
            logger.error("store unavailable for %s: %s", candidate.source_url, exc)
            return ListingOutcome(source_url=candidate.source_url, error=f"transient: {exc}")
        except Exception as exc:  # one bad listing never aborts the batch
            logger.exception("failed to process %s", candidate.source_url)
            return ListingOutcome(source_url=candidate.source_url, error=str(exc) or exc.__class__.__name__)

    async def run_batch(
        self,
        candidates: Iterable[ListingCandidate],
        *,
        concurrency: int = 1,
    ) -> BatchSummary:
        """Process a batch; listings that could touch the same row run sequentially in one lane.

        Up to ``concurrency`` lanes run at once, each doing its store work on a worker thread.
        """
        items = list(candidates)
        lanes = plan_lanes(items)
        sem = asyncio.Semaphore(max(1, min(concurrency, MAX_CONCURRENCY)))
        outcomes: Dict[int, ListingOutcome] = {}

        async def _run_lane(lane: List[int]) -> None:
            async with sem:
                for idx in lane:
                    outcomes[idx] = await self._process_isolated(items[idx])

        await asyncio.gather(*(_run_lane(lane) for lane in lanes))

        summary = BatchSummary()
        for idx in range(len(items)):
            summary.record(outcomes[idx])
        logger.info(
            "batch finished: new=%d updated=%d merged=%d relisted=%d errored=%d",
            summary.new,
            summary.updated,
            summary.merged,
            summary.relisted,
            summary.errored,
        )
        return summary
