import asyncio
import contextlib
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from listingcore.app.core.records import ListingCandidate
from listingcore.app.db.store import TransientStoreError
from listingcore.app.services.identity import IdentityResolver, Resolution
from listingcore.app.services.options_client import OptionsServiceError
from listingcore.app.services.options_normalizer import OptionsNormalizer
from listingcore.app.services.pipeline import ListingPipeline, plan_lanes

VIN = "WP0AF2A9XKS149521"
SCRAPED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class StubClient:
    def __init__(self, names=None, error=None):
        self.names = names or []
        self.error = error
        self.calls = 0

    async def extract_option_names(self, text):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.names)


def _candidate(source_url, **overrides):
    values = dict(
        source="bring-a-trailer",
        source_url=source_url,
        title="2019 Porsche 911 GT3 RS",
        vin=VIN,
        price=Decimal("245000"),
        mileage=4200,
        sold_date=date(2023, 5, 1),
        scraped_at=SCRAPED_AT,
    )
    values.update(overrides)
    return ListingCandidate(**values)


def _resolver(store):
    return IdentityResolver(store, backoff_base=0, sleep=lambda _: None)


def test_plan_lanes_groups_by_url_and_vin():
    candidates = [
        _candidate("https://a.test/1"),
        _candidate("https://a.test/2", vin=None),
        _candidate("https://b.test/9"),
        _candidate("https://a.test/2", vin=None),
        _candidate("https://c.test/5", vin="wp0ac2a9xfs183456"),
    ]
    assert plan_lanes(candidates) == [[0, 2], [1, 3], [4]]


@pytest.mark.asyncio
async def test_batch_resolves_each_outcome_and_stores_premium_options(store, option_catalog):
    client = StubClient(["PDK", "Porsche Ceramic Composite Brakes", "Weissach Package", "Heated Seats"])
    pipeline = ListingPipeline(store, OptionsNormalizer(client, option_catalog), resolver=_resolver(store))
    candidates = [
        _candidate("https://bat.test/gt3rs", options_text="PDK, PCCB, Weissach, heated seats"),
        _candidate("https://bat.test/gt3rs", options_text="PDK, PCCB, Weissach, heated seats"),
        _candidate("https://cab.test/gt3rs", source="cars-and-bids", exterior_color="Lizard Green"),
        _candidate("https://bat.test/gt3rs-again", price=Decimal("262000"), sold_date=date(2024, 2, 1)),
        _candidate(
            "https://pcar.test/gt4", title="2016 Porsche Cayman GT4", vin=None, price=Decimal("98000"), mileage=12000
        ),
    ]

    summary = await pipeline.run_batch(candidates)

    assert (summary.new, summary.updated, summary.merged, summary.relisted, summary.errored) == (2, 1, 1, 1, 0)
    assert [outcome.resolution for outcome in summary.outcomes] == [
        Resolution.NEW,
        Resolution.UPDATE,
        Resolution.DUPLICATE_MERGE,
        Resolution.RELIST,
        Resolution.NEW,
    ]
    assert summary.unmatched_options["Heated Seats"] == 2
    assert client.calls == 2

    gt3rs = store.find_by_vin(VIN)
    assert gt3rs.source_url == "https://bat.test/gt3rs-again"
    assert gt3rs.exterior_color == "Lizard Green"
    assert gt3rs.sold_date == date(2024, 2, 1)
    # PDK ships standard on a 991.2 GT3 RS
    assert store.option_names_for(gt3rs.id) == ["Porsche Ceramic Composite Brakes", "Weissach Package"]

    gt4 = store.find_by_url("https://pcar.test/gt4")
    assert (gt4.year, gt4.model, gt4.trim, gt4.generation) == (2016, "718 Cayman", "GT4", "981")
    assert gt4.provenance["generation"] == "year-inferred"


@pytest.mark.asyncio
async def test_unavailable_options_service_keeps_previous_options(store, option_catalog):
    healthy = ListingPipeline(
        store, OptionsNormalizer(StubClient(["Weissach Package"]), option_catalog), resolver=_resolver(store)
    )
    first = await healthy.process(_candidate("https://bat.test/gt3rs", options_text="Weissach"))

    failing = ListingPipeline(
        store,
        OptionsNormalizer(StubClient(error=OptionsServiceError("503")), option_catalog),
        resolver=_resolver(store),
    )
    outcome = await failing.process(_candidate("https://bat.test/gt3rs", options_text="Weissach, Front Axle Lift"))

    assert outcome.resolution is Resolution.UPDATE
    assert "options-skipped" in outcome.flags
    assert store.option_names_for(first.listing_id) == ["Weissach Package"]
    assert store.find_by_url("https://bat.test/gt3rs").options_text == "Weissach, Front Axle Lift"


@pytest.mark.asyncio
async def test_missing_normalizer_flags_options_as_skipped(store):
    pipeline = ListingPipeline(store, resolver=_resolver(store))
    outcome = await pipeline.process(_candidate("https://bat.test/gt3rs", options_text="PCCB"))
    assert outcome.resolution is Resolution.NEW
    assert "options-skipped" in outcome.flags
    assert store.option_names_for(outcome.listing_id) == []


@pytest.mark.asyncio
async def test_malformed_vin_is_not_used_as_identity(store):
    pipeline = ListingPipeline(store, resolver=_resolver(store))
    outcome = await pipeline.process(_candidate("https://bat.test/typo", vin="WP0AF2A9XKS14952"))
    assert "vin-malformed" in outcome.flags
    row = store.find_by_url("https://bat.test/typo")
    assert row.vin is None
    assert (row.year, row.trim) == (2019, "GT3 RS")


class BrokenStore:
    def __init__(self, inner, broken_url, error):
        self.inner = inner
        self.broken_url = broken_url
        self.error = error

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def find_by_url(self, source_url):
        if source_url == self.broken_url:
            raise self.error
        return self.inner.find_by_url(source_url)


@pytest.mark.asyncio
async def test_one_failing_listing_does_not_abort_the_batch(store):
    broken = BrokenStore(store, "https://bat.test/broken", RuntimeError("bad row"))
    pipeline = ListingPipeline(broken, resolver=_resolver(broken))
    summary = await pipeline.run_batch(
        [_candidate("https://bat.test/broken"), _candidate("https://pcar.test/gt4", title="2016 Cayman GT4", vin=None)]
    )
    assert summary.new == 1
    assert summary.errored == 1
    assert summary.errors == [{"source_url": "https://bat.test/broken", "error": "bad row"}]
    assert summary.as_dict()["errored"] == 1


@pytest.mark.asyncio
async def test_store_outage_is_reported_after_retries(store):
    broken = BrokenStore(store, "https://bat.test/gt3rs", TransientStoreError("server closed the connection"))
    pipeline = ListingPipeline(broken, resolver=_resolver(broken))
    summary = await pipeline.run_batch([_candidate("https://bat.test/gt3rs")])
    assert summary.errored == 1
    assert summary.errors[0]["error"].startswith("transient:")


@pytest.mark.asyncio
async def test_paint_to_sample_color_is_stored_as_an_option(store, option_catalog):
    client = StubClient()
    pipeline = ListingPipeline(store, OptionsNormalizer(client, option_catalog), resolver=_resolver(store))
    outcome = await pipeline.process(_candidate("https://bat.test/gt3rs", exterior_color="Paint to Sample Oslo Blue"))

    assert outcome.resolution is Resolution.NEW
    assert "paint-to-sample" in outcome.flags
    assert outcome.option_names == ["Paint to Sample"]
    assert client.calls == 0
    assert store.find_by_url("https://bat.test/gt3rs").exterior_color == "Oslo Blue"
    assert store.option_names_for(outcome.listing_id) == ["Paint to Sample"]


class FlakyStore:
    def __init__(self, inner, failures=1):
        self.inner = inner
        self.failures = failures

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def find_by_url(self, source_url):
        if self.failures:
            self.failures -= 1
            raise TransientStoreError("connection reset")
        return self.inner.find_by_url(source_url)


@pytest.mark.asyncio
async def test_store_retry_backoff_keeps_the_event_loop_running(store):
    flaky = FlakyStore(store)
    pipeline = ListingPipeline(flaky, resolver=IdentityResolver(flaky, max_attempts=2, backoff_base=0.2))
    ticks = 0

    async def _tick():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    ticker = asyncio.create_task(_tick())
    outcome = await pipeline.process(_candidate("https://bat.test/gt3rs"))
    ticker.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await ticker

    assert outcome.resolution is Resolution.NEW
    assert ticks >= 5


class MemoryStore:
    """Thread-safe store whose URL lookups only return once two callers are inside at the same time."""

    def __init__(self):
        self.rows = {}
        self.lock = threading.Lock()
        self.lookups = threading.Barrier(2, timeout=5)

    def find_by_url(self, source_url):
        self.lookups.wait()
        return None

    def find_by_vin(self, vin):
        return None

    def upsert_by_url(self, values):
        with self.lock:
            listing_id = len(self.rows) + 1
            self.rows[values["source_url"]] = listing_id
            return listing_id


@pytest.mark.asyncio
async def test_independent_lanes_run_in_parallel():
    store = MemoryStore()
    pipeline = ListingPipeline(store, resolver=_resolver(store))
    summary = await pipeline.run_batch(
        [_candidate("https://bat.test/gt3rs", vin=None), _candidate("https://pcar.test/gt3rs", vin=None)],
        concurrency=2,
    )
    assert summary.new == 2
    assert summary.errored == 0
    assert sorted(store.rows) == ["https://bat.test/gt3rs", "https://pcar.test/gt3rs"]
