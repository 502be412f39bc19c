from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from listingcore.app.core.records import EnrichedListing, ListingRecord
from listingcore.app.db.store import ListingConflictError, TransientStoreError
from listingcore.app.services.identity import (
    DUPLICATE_MERGE_POLICY,
    IdentityResolver,
    Resolution,
    ResolutionConflictError,
    merge_fields,
)

SCRAPED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

VIN = "WP0AF2A9XKS149521"


def _listing(**overrides) -> EnrichedListing:
    values = dict(
        source="bring-a-trailer",
        source_url="https://bringatrailer.test/listing/2019-gt3-rs",
        title="2019 Porsche 911 GT3 RS Weissach",
        vin=VIN,
        year=2019,
        model="911",
        trim="GT3 RS",
        generation="991.2",
        price=Decimal("245000"),
        mileage=4200,
        exterior_color=None,
        interior_color="Black",
        location="Austin, TX",
        options_text="Weissach Package, PCCB",
        sold_date=date(2023, 5, 1),
        scraped_at=SCRAPED_AT,
        provenance={"year": "vin-decoded", "model": "vin-decoded", "trim": "vin-decoded", "generation": "vin-decoded"},
    )
    values.update(overrides)
    return EnrichedListing(**values)


def _resolver(store, sleeps=None):
    return IdentityResolver(store, max_attempts=3, backoff_base=0, sleep=(sleeps.append if sleeps is not None else lambda _: None))


def test_first_sighting_creates_listing(store):
    result = _resolver(store).resolve(_listing())
    assert result.resolution is Resolution.NEW
    assert result.adopt_options
    row = store.find_by_vin(VIN)
    assert row.id == result.listing_id
    assert row.price == Decimal("245000")
    assert row.provenance["trim"] == "vin-decoded"


def test_rescrape_is_idempotent(store):
    resolver = _resolver(store)
    first = resolver.resolve(_listing())
    second = resolver.resolve(_listing())
    assert second.resolution is Resolution.UPDATE
    assert second.listing_id == first.listing_id
    assert not second.changed


def test_rescrape_updates_changed_fields(store):
    resolver = _resolver(store)
    first = resolver.resolve(_listing())
    later = SCRAPED_AT + timedelta(days=1)
    result = resolver.resolve(_listing(price=Decimal("239000"), scraped_at=later))
    assert result.resolution is Resolution.UPDATE
    assert result.changed
    row = store.find_by_url(_listing().source_url)
    assert row.id == first.listing_id
    assert row.price == Decimal("239000")


def test_same_sale_on_another_site_fills_gaps_only(store):
    resolver = _resolver(store)
    first = resolver.resolve(_listing())
    duplicate = _listing(
        source="cars-and-bids",
        source_url="https://carsandbids.test/auctions/xyz",
        price=Decimal("250000"),
        exterior_color="Lizard Green",
        options_text="Weissach, Lift",
    )
    result = resolver.resolve(duplicate)
    assert result.resolution is Resolution.DUPLICATE_MERGE
    assert result.listing_id == first.listing_id
    assert not result.adopt_options
    row = store.find_by_vin(VIN)
    assert row.source_url == _listing().source_url
    assert row.price == Decimal("245000")
    assert row.exterior_color == "Lizard Green"
    assert row.options_text == "Weissach Package, PCCB"
    assert store.find_by_url(duplicate.source_url) is None


def test_relist_keeps_one_row_with_latest_sale(store):
    resolver = _resolver(store)
    first = resolver.resolve(_listing(sold_date=date(2021, 3, 1), price=Decimal("210000")))
    relist = _listing(
        source_url="https://bringatrailer.test/listing/2019-gt3-rs-2",
        title="2019 Porsche 911 GT3 RS",
        price=Decimal("265000"),
        mileage=6100,
        sold_date=date(2023, 8, 15),
        scraped_at=SCRAPED_AT + timedelta(days=30),
    )
    result = resolver.resolve(relist)
    assert result.resolution is Resolution.RELIST
    assert result.listing_id == first.listing_id
    row = store.find_by_vin(VIN)
    assert row.source_url == relist.source_url
    assert row.price == Decimal("265000")
    assert row.sold_date == date(2023, 8, 15)
    assert row.title == "2019 Porsche 911 GT3 RS"
    assert row.mileage == 4200
    assert store.find_by_url(_listing().source_url) is None


def test_older_sale_seen_late_does_not_roll_back(store):
    resolver = _resolver(store)
    resolver.resolve(_listing(sold_date=date(2023, 8, 15), price=Decimal("265000")))
    stale = _listing(
        source_url="https://pcarmarket.test/auction/old",
        sold_date=date(2021, 3, 1),
        price=Decimal("210000"),
        exterior_color="Lizard Green",
    )
    result = resolver.resolve(stale)
    assert result.resolution is Resolution.RELIST
    assert "stale-relist" in result.notes
    row = store.find_by_vin(VIN)
    assert row.sold_date == date(2023, 8, 15)
    assert row.price == Decimal("265000")
    assert row.source_url == _listing().source_url
    assert row.exterior_color == "Lizard Green"


def test_unsold_page_does_not_erase_recorded_sale(store):
    resolver = _resolver(store)
    first_url = "https://pcarmarket.test/auction/a"
    second_url = "https://bringatrailer.test/listing/b"
    resolver.resolve(_listing(source_url=first_url, sold_date=None))
    later = SCRAPED_AT + timedelta(days=1)
    resolver.resolve(_listing(source_url=second_url, sold_date=date(2023, 1, 1), scraped_at=later))

    result = resolver.resolve(_listing(source_url=first_url, sold_date=None, scraped_at=later + timedelta(days=1)))
    assert result.resolution is Resolution.RELIST
    assert "stale-relist" in result.notes
    row = store.find_by_vin(VIN)
    assert row.sold_date == date(2023, 1, 1)
    assert row.source_url == second_url


def test_url_row_is_merged_into_vin_row_for_same_sale(store):
    resolver = _resolver(store)
    vin_row = resolver.resolve(_listing())
    url_only = _listing(source="cars-and-bids", source_url="https://carsandbids.test/auctions/xyz", vin=None)
    url_row = resolver.resolve(url_only)
    assert url_row.resolution is Resolution.NEW

    result = resolver.resolve(_listing(source="cars-and-bids", source_url=url_only.source_url))
    assert result.resolution is Resolution.DUPLICATE_MERGE
    assert result.listing_id == vin_row.listing_id
    assert result.merged_away_id == url_row.listing_id
    assert store.find_by_url(url_only.source_url) is None
    assert store.find_by_vin(VIN).id == vin_row.listing_id


def test_failed_merge_leaves_both_rows_untouched(engine, store):
    resolver = _resolver(store)
    resolver.resolve(_listing())
    url_only = _listing(source="cars-and-bids", source_url="https://carsandbids.test/auctions/xyz", vin=None)
    url_row = resolver.resolve(url_only)

    @event.listens_for(engine, "before_cursor_execute")
    def _fail_listing_delete(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("DELETE FROM listings "):
            raise OperationalError(statement, parameters, Exception("server closed the connection unexpectedly"))

    with pytest.raises(TransientStoreError):
        resolver.resolve(
            _listing(source="cars-and-bids", source_url=url_only.source_url, exterior_color="Shark Blue")
        )

    assert store.find_by_vin(VIN).exterior_color is None
    assert store.find_by_url(url_only.source_url).id == url_row.listing_id


def test_vin_held_by_another_sale_is_not_moved(store):
    resolver = _resolver(store)
    vin_row = resolver.resolve(_listing())
    other_url = "https://carsandbids.test/auctions/other"
    url_row = resolver.resolve(_listing(source_url=other_url, vin=None, sold_date=date(2024, 1, 10)))

    result = resolver.resolve(_listing(source_url=other_url, sold_date=date(2024, 1, 10), price=Decimal("255000")))
    assert result.resolution is Resolution.UPDATE
    assert result.listing_id == url_row.listing_id
    assert "vin-held-elsewhere" in result.notes
    row = store.find_by_url(other_url)
    assert row.vin is None
    assert row.price == Decimal("255000")
    assert store.find_by_vin(VIN).id == vin_row.listing_id


class RacingStore:
    """Wraps a real store; a competing writer claims the VIN right before our inserts."""

    def __init__(self, inner, conflicts=1):
        self.inner = inner
        self.conflicts = conflicts
        self.upserts = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def upsert_by_url(self, values):
        self.upserts += 1
        if self.conflicts:
            self.conflicts -= 1
            if self.inner.find_by_vin(values["vin"]) is None:
                self.inner.upsert_by_url({**values, "source_url": "https://competitor.test/listing/1"})
            raise ListingConflictError("UNIQUE constraint failed: listings.vin")
        return self.inner.upsert_by_url(values)


def test_conflict_is_resolved_again_against_the_winner(store):
    racing = RacingStore(store)
    result = _resolver(racing).resolve(_listing())
    assert result.resolution is Resolution.DUPLICATE_MERGE
    assert store.find_by_vin(VIN).source_url == "https://competitor.test/listing/1"
    assert racing.upserts == 1


def test_persistent_conflict_raises(store):
    class AlwaysConflicting(RacingStore):
        def find_by_vin(self, vin):
            return None

    racing = AlwaysConflicting(store, conflicts=5)
    with pytest.raises(ResolutionConflictError):
        _resolver(racing).resolve(_listing())
    assert racing.upserts == 2


def test_transient_errors_are_retried(store):
    class FlakyStore:
        def __init__(self, inner):
            self.inner = inner
            self.failures = 1

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def find_by_url(self, source_url):
            if self.failures:
                self.failures -= 1
                raise TransientStoreError("connection reset")
            return self.inner.find_by_url(source_url)

    sleeps = []
    result = _resolver(FlakyStore(store), sleeps).resolve(_listing())
    assert result.resolution is Resolution.NEW
    assert len(sleeps) == 1


def test_touch_only_applies_alongside_other_changes():
    existing = ListingRecord(
        id=1,
        source="bring-a-trailer",
        source_url="https://bringatrailer.test/listing/1",
        exterior_color="Shark Blue",
        scraped_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        provenance={},
    )
    later = datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert merge_fields(existing, {"exterior_color": "Guards Red", "scraped_at": later}, DUPLICATE_MERGE_POLICY) == {}

    changes = merge_fields(
        existing, {"interior_color": "Black", "scraped_at": later}, DUPLICATE_MERGE_POLICY, {"interior_color": "x"}
    )
    assert changes["interior_color"] == "Black"
    assert changes["scraped_at"] == later
    assert changes["provenance"] == {"interior_color": "x"}
