from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from listingcore.app.api.routes.listings import serialize_listing
from listingcore.app.db import models
from listingcore.app.db.session import get_session
from listingcore.app.enrichment.vin_decoder import decode

router = APIRouter()

@router.get("/{vin}")
async def vin_detail(vin: str, db: Session = Depends(get_session)):
    """Return the structural decode of a VIN plus its canonical listing and premium options."""
    decoded = decode(vin)
    listing = None
    options = []
    if decoded.vin:
        row = db.execute(
            select(models.CanonicalListing).where(models.CanonicalListing.vin == decoded.vin)
        ).scalar_one_or_none()
        if row is not None:
            listing = serialize_listing(row)
            options = list(
                db.execute(
                    select(models.OptionCatalogEntry.name)
                    .join(models.ListingOption, models.ListingOption.option_id == models.OptionCatalogEntry.id)
                    .where(models.ListingOption.listing_id == row.id)
                    .order_by(models.OptionCatalogEntry.name)
                ).scalars()
            )
    return {
        "vin": decoded.vin,
        "decoded": {
            "valid": decoded.valid,
            "confidence": decoded.confidence.value,
            "model_year": decoded.model_year,
            "model": decoded.model,
            "trim": decoded.trim,
            "generation": decoded.generation,
            "body_style": decoded.body_style,
            "plant": decoded.plant,
            "errors": list(decoded.errors),
        },
        "listing": listing,
        "options": options,
    }
