from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

# Fields copied from a candidate into the canonical row as-is.
CANDIDATE_FIELDS = (
    "source",
    "source_url",
    "title",
    "price",
    "mileage",
    "exterior_color",
    "interior_color",
    "location",
    "options_text",
    "sold_date",
    "scraped_at",
)


def ensure_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _as_decimal(value: Any) -> Optional[Decimal]:
    if _is_blank(value):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, ArithmeticError, InvalidOperation):
        return None


def _as_int(value: Any) -> Optional[int]:
    if _is_blank(value):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _as_text(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    return str(value).strip()


def _as_date(value: Any) -> Optional[date]:
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    if hasattr(value, "to_pydatetime"):
        # pandas Timestamp
        return ensure_utc(value.to_pydatetime()).date()
    try:
        return datetime.fromisoformat(str(value).strip()).date()
    except ValueError:
        return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if _is_blank(value):
        return None
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError:
        return None


@dataclass
class ListingCandidate:
    """One scraped listing as handed over by a source scraper."""

    source: str
    source_url: str
    title: str = ""
    vin: Optional[str] = None
    year: Optional[int] = None
    price: Optional[Decimal] = None
    mileage: Optional[int] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    location: Optional[str] = None
    options_text: Optional[str] = None
    sold_date: Optional[date] = None
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "ListingCandidate":
        """Build a candidate from a loosely typed row (driver CSV, JSON, DataFrame record)."""
        source = _as_text(row.get("source"))
        source_url = _as_text(row.get("source_url") or row.get("url"))
        if not source or not source_url:
            raise ValueError("source and source_url are required")
        return cls(
            source=source,
            source_url=source_url,
            title=_as_text(row.get("title")) or "",
            vin=_as_text(row.get("vin")),
            year=_as_int(row.get("year")),
            price=_as_decimal(row.get("price")),
            mileage=_as_int(row.get("mileage")),
            exterior_color=_as_text(row.get("exterior_color")),
            interior_color=_as_text(row.get("interior_color")),
            location=_as_text(row.get("location")),
            options_text=_as_text(row.get("options_text")),
            sold_date=_as_date(row.get("sold_date")),
            scraped_at=_as_datetime(row.get("scraped_at")) or datetime.now(timezone.utc),
        )

    @property
    def reference_year(self) -> int:
        """Calendar year the listing is observed at: sale year, else scrape year."""
        if self.sold_date is not None:
            return self.sold_date.year
        return ensure_utc(self.scraped_at).year


@dataclass
class EnrichedListing:
    source: str
    source_url: str
    title: str
    vin: Optional[str]
    year: Optional[int]
    model: Optional[str]
    trim: Optional[str]
    generation: Optional[str]
    price: Optional[Decimal]
    mileage: Optional[int]
    exterior_color: Optional[str]
    interior_color: Optional[str]
    location: Optional[str]
    options_text: Optional[str]
    sold_date: Optional[date]
    scraped_at: datetime
    vin_confidence: Optional[str] = None
    provenance: Dict[str, str] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    paint_to_sample: bool = False

    def record_fields(self) -> Dict[str, Any]:
        """Column values for the canonical listing row."""
        values = {name: getattr(self, name) for name in CANDIDATE_FIELDS}
        values.update(
            vin=self.vin,
            year=self.year,
            model=self.model,
            trim=self.trim,
            generation=self.generation,
            provenance=dict(self.provenance),
        )
        return values


@dataclass
class ListingRecord:
    """Detached snapshot of a canonical listing row."""

    id: int
    source: str
    source_url: str
    title: Optional[str] = None
    vin: Optional[str] = None
    year: Optional[int] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    generation: Optional[str] = None
    price: Optional[Decimal] = None
    mileage: Optional[int] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    location: Optional[str] = None
    options_text: Optional[str] = None
    sold_date: Optional[date] = None
    scraped_at: Optional[datetime] = None
    provenance: Optional[Dict[str, str]] = None

    @classmethod
    def column_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != "id"]
