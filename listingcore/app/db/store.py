from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from listingcore.app.core.records import ListingRecord
from listingcore.app.db import models
from listingcore.app.db.session import SessionLocal, session_scope

logger = logging.getLogger(__name__)

WRITABLE_COLUMNS = frozenset(ListingRecord.column_names())


class StoreError(Exception):
    """Base exception for persistence failures."""


class ListingConflictError(StoreError):
    """A write violated URL or VIN uniqueness (a concurrent writer got there first)."""


class TransientStoreError(StoreError):
    """Connection loss, lock or pool timeout; safe to retry."""


@dataclass(frozen=True)
class CatalogOption:
    id: int
    name: str
    category: Optional[str] = None


class ListingStore(Protocol):
    def find_by_url(self, source_url: str) -> Optional[ListingRecord]: ...

    def find_by_vin(self, vin: str) -> Optional[ListingRecord]: ...

    def upsert_by_url(self, values: Mapping[str, Any]) -> int: ...

    def update_by_id(self, listing_id: int, values: Mapping[str, Any]) -> None: ...

    def delete_by_id(self, listing_id: int) -> None: ...

    def merge_and_delete(self, target_id: int, values: Mapping[str, Any], delete_id: int) -> None: ...

    def replace_option_associations(self, listing_id: int, option_ids: Iterable[int]) -> None: ...


def _to_record(row: models.CanonicalListing) -> ListingRecord:
    return ListingRecord(id=row.id, **{name: getattr(row, name) for name in ListingRecord.column_names()})


def _clean_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(values) - WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown listing columns: {sorted(unknown)}")
    return dict(values)


class SqlAlchemyListingStore:
    """Listing persistence over SQLAlchemy; every public call is one transaction."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _run(self, operation, *, description: str):
        try:
            with session_scope(self._session_factory) as session:
                return operation(session)
        except IntegrityError as exc:
            raise ListingConflictError(f"{description}: {exc.orig}") from exc
        except (OperationalError, PoolTimeoutError) as exc:
            raise TransientStoreError(f"{description}: {exc}") from exc

    def find_by_url(self, source_url: str) -> Optional[ListingRecord]:
        def _op(session: Session):
            row = session.execute(
                select(models.CanonicalListing).where(models.CanonicalListing.source_url == source_url)
            ).scalar_one_or_none()
            return _to_record(row) if row else None

        return self._run(_op, description=f"find_by_url {source_url}")

    def find_by_vin(self, vin: str) -> Optional[ListingRecord]:
        def _op(session: Session):
            row = session.execute(
                select(models.CanonicalListing).where(models.CanonicalListing.vin == vin.upper())
            ).scalar_one_or_none()
            return _to_record(row) if row else None

        return self._run(_op, description=f"find_by_vin {vin}")

    def upsert_by_url(self, values: Mapping[str, Any]) -> int:
        """Insert the listing or overwrite the row holding the same source_url; returns its id."""
        payload = _clean_values(values)
        source_url = payload.get("source_url")
        if not source_url:
            raise ValueError("source_url is required for upsert")

        def _op(session: Session):
            row = session.execute(
                select(models.CanonicalListing).where(models.CanonicalListing.source_url == source_url)
            ).scalar_one_or_none()
            if row is None:
                row = models.CanonicalListing(**payload)
                session.add(row)
            else:
                for name, value in payload.items():
                    setattr(row, name, value)
            session.flush()
            return row.id

        return self._run(_op, description=f"upsert {source_url}")

    def update_by_id(self, listing_id: int, values: Mapping[str, Any]) -> None:
        payload = _clean_values(values)
        if not payload:
            return

        def _op(session: Session):
            row = session.get(models.CanonicalListing, listing_id)
            if row is None:
                raise StoreError(f"listing {listing_id} does not exist")
            for name, value in payload.items():
                setattr(row, name, value)
            session.flush()

        self._run(_op, description=f"update listing {listing_id}")

    def delete_by_id(self, listing_id: int) -> None:
        def _op(session: Session):
            # associations first, SQLite does not enforce ON DELETE CASCADE by default
            session.execute(delete(models.ListingOption).where(models.ListingOption.listing_id == listing_id))
            session.execute(delete(models.CanonicalListing).where(models.CanonicalListing.id == listing_id))

        self._run(_op, description=f"delete listing {listing_id}")

    def merge_and_delete(self, target_id: int, values: Mapping[str, Any], delete_id: int) -> None:
        """Fold one listing into another: update the survivor and delete the other row in one transaction."""
        payload = _clean_values(values)

        def _op(session: Session):
            row = session.get(models.CanonicalListing, target_id)
            if row is None:
                raise StoreError(f"listing {target_id} does not exist")
            for name, value in payload.items():
                setattr(row, name, value)
            session.flush()
            session.execute(delete(models.ListingOption).where(models.ListingOption.listing_id == delete_id))
            session.execute(delete(models.CanonicalListing).where(models.CanonicalListing.id == delete_id))

        self._run(_op, description=f"merge listing {delete_id} into {target_id}")

    def replace_option_associations(self, listing_id: int, option_ids: Iterable[int]) -> None:
        """Delete-then-insert the listing's option set in one transaction."""
        unique_ids = sorted(set(option_ids))

        def _op(session: Session):
            session.execute(delete(models.ListingOption).where(models.ListingOption.listing_id == listing_id))
            for option_id in unique_ids:
                session.add(models.ListingOption(listing_id=listing_id, option_id=option_id))
            session.flush()

        self._run(_op, description=f"replace options for listing {listing_id}")

    def option_names_for(self, listing_id: int) -> List[str]:
        def _op(session: Session):
            rows = session.execute(
                select(models.OptionCatalogEntry.name)
                .join(models.ListingOption, models.ListingOption.option_id == models.OptionCatalogEntry.id)
                .where(models.ListingOption.listing_id == listing_id)
                .order_by(models.OptionCatalogEntry.name)
            ).scalars()
            return list(rows)

        return self._run(_op, description=f"options for listing {listing_id}")

    def load_option_catalog(self) -> List[CatalogOption]:
        def _op(session: Session):
            rows = session.execute(select(models.OptionCatalogEntry).order_by(models.OptionCatalogEntry.id)).scalars()
            return [CatalogOption(id=row.id, name=row.name, category=row.category) for row in rows]

        return self._run(_op, description="load option catalog")

    def add_catalog_options(self, entries: Sequence[Mapping[str, Any]]) -> int:
        """Append catalog entries whose name is not present yet; returns how many were added."""

        def _op(session: Session):
            existing = set(session.execute(select(models.OptionCatalogEntry.name)).scalars())
            added = 0
            for entry in entries:
                name = (entry.get("name") or "").strip()
                if not name or name in existing:
                    continue
                session.add(models.OptionCatalogEntry(name=name, category=entry.get("category")))
                existing.add(name)
                added += 1
            return added

        added = self._run(_op, description="seed option catalog")
        logger.info("option catalog: %d entries added", added)
        return added
