from fastapi import FastAPI
from .routes import listings, vin

app = FastAPI(title="Listing Canonicalization API", version="0.1.0")

app.include_router(listings.router, prefix="/listings", tags=["listings"])
app.include_router(vin.router, prefix="/vin", tags=["vin"])
