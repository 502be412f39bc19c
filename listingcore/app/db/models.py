from sqlalchemy import (
    Column, Integer, String, Numeric, Text, Date, DateTime, ForeignKey, JSON, text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class CanonicalListing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)
    source_url = Column(Text, nullable=False, unique=True)
    vin = Column(String(17), unique=True)  # NULL allowed, at most one row per VIN
    year = Column(Integer)
    model = Column(Text)
    trim = Column(Text)
    generation = Column(Text)
    price = Column(Numeric(12,2))
    mileage = Column(Integer)
    exterior_color = Column(Text)
    interior_color = Column(Text)
    location = Column(Text)
    title = Column(Text)
    options_text = Column(Text)
    sold_date = Column(Date)
    scraped_at = Column(DateTime(timezone=True), nullable=False)  # last write from a scrape
    provenance = Column(JSON)  # field -> vin-decoded|title-inferred|year-inferred|source-provided
    created_at = Column(DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

class OptionCatalogEntry(Base):
    __tablename__ = "options"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)
    category = Column(Text)

class ListingOption(Base):
    __tablename__ = "listing_options"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    option_id = Column(Integer, ForeignKey("options.id", ondelete="CASCADE"), primary_key=True)
