from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from listingcore.app.db import models
from listingcore.app.db.session import get_session

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50

SORT_OPTIONS = {
    "sold_date_desc": lambda: (models.CanonicalListing.sold_date.desc().nulls_last(), models.CanonicalListing.id.desc()),
    "sold_date_asc": lambda: (models.CanonicalListing.sold_date.asc().nulls_last(), models.CanonicalListing.id.asc()),
    "price_asc": lambda: (models.CanonicalListing.price.asc().nulls_last(), models.CanonicalListing.id.asc()),
    "price_desc": lambda: (models.CanonicalListing.price.desc().nulls_last(), models.CanonicalListing.id.asc()),
    "mileage_asc": lambda: (models.CanonicalListing.mileage.asc().nulls_last(), models.CanonicalListing.id.asc()),
}

router = APIRouter()


def serialize_listing(listing: models.CanonicalListing) -> Dict[str, Any]:
    return {
        "id": listing.id,
        "source": listing.source,
        "source_url": listing.source_url,
        "vin": listing.vin,
        "year": listing.year,
        "model": listing.model,
        "trim": listing.trim,
        "generation": listing.generation,
        "price": float(listing.price) if listing.price is not None else None,
        "mileage": listing.mileage,
        "exterior_color": listing.exterior_color,
        "interior_color": listing.interior_color,
        "location": listing.location,
        "title": listing.title,
        "sold_date": listing.sold_date.isoformat() if listing.sold_date else None,
        "scraped_at": listing.scraped_at.isoformat() if listing.scraped_at else None,
        "provenance": listing.provenance or {},
    }


@router.get("")
async def search_listings(
    vin: Optional[str] = None,
    source: Optional[str] = None,
    model: Optional[str] = None,
    trim: Optional[str] = None,
    generation: Optional[str] = None,
    sold_from: Optional[date] = None,
    sold_to: Optional[date] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    sort: str = "sold_date_desc",
    db: Session = Depends(get_session),
):
    if page < 1 or size < 1:
        raise HTTPException(status_code=400, detail="page and size must be >= 1")
    if sold_from and sold_to and sold_from > sold_to:
        raise HTTPException(status_code=400, detail="sold_from must not be after sold_to")
    size = min(size, MAX_PAGE_SIZE)

    sort_fn = SORT_OPTIONS.get(sort)
    if not sort_fn:
        raise HTTPException(status_code=400, detail=f"Unsupported sort option '{sort}'")

    listing = models.CanonicalListing
    stmt = select(listing)

    if vin:
        stmt = stmt.where(listing.vin == vin.strip().upper())
    if source:
        stmt = stmt.where(listing.source == source)
    if model:
        stmt = stmt.where(func.lower(listing.model) == model.lower())
    if trim:
        stmt = stmt.where(func.lower(listing.trim) == trim.lower())
    if generation:
        # "991" also matches "991.1" and "991.2"
        stmt = stmt.where((listing.generation == generation) | listing.generation.like(f"{generation}.%"))
    if sold_from:
        stmt = stmt.where(listing.sold_date >= sold_from)
    if sold_to:
        stmt = stmt.where(listing.sold_date <= sold_to)
    if min_price is not None:
        stmt = stmt.where(listing.price >= min_price)
    if max_price is not None:
        stmt = stmt.where(listing.price <= max_price)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    stmt = stmt.order_by(*sort_fn()).offset((page - 1) * size).limit(size)
    rows = [serialize_listing(row) for row in db.execute(stmt).scalars()]

    return {
        "page": page,
        "size": size,
        "total": total,
        "rows": rows,
        "applied_filters": {
            "vin": vin,
            "source": source,
            "model": model,
            "trim": trim,
            "generation": generation,
            "sold_from": sold_from.isoformat() if sold_from else None,
            "sold_to": sold_to.isoformat() if sold_to else None,
            "min_price": min_price,
            "max_price": max_price,
            "sort": sort,
        },
    }
