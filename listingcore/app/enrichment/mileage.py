from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from listingcore.app.core.settings import Settings, settings
from listingcore.app.enrichment.reference import is_track_trim

# scrapers occasionally drop a decimal point or read "1.2k" as 1200 -> 12000
DECIMAL_SHIFTS = (10, 100)


@dataclass(frozen=True)
class MileagePolicy:
    floor: int = 10000
    track_miles_per_year: int = 10000
    standard_miles_per_year: int = 25000
    near_new_multiplier: float = 2.0
    absolute_cap: int = 400000

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "MileagePolicy":
        return cls(
            floor=cfg.mileage_floor,
            track_miles_per_year=cfg.track_miles_per_year,
            standard_miles_per_year=cfg.standard_miles_per_year,
            near_new_multiplier=cfg.near_new_multiplier,
            absolute_cap=cfg.absolute_mileage_cap,
        )

    def ceiling(self, model_year: Optional[int], reference_year: int, trim: Optional[str]) -> int:
        if model_year is None:
            return self.absolute_cap
        age = max(reference_year - model_year, 0)
        per_year = self.track_miles_per_year if is_track_trim(trim) else self.standard_miles_per_year
        if age <= 1:
            per_year = int(per_year * self.near_new_multiplier)
        return max(age * per_year, self.floor)


@dataclass(frozen=True)
class MileageCheck:
    mileage: Optional[int]
    original: Optional[int] = None
    corrected: bool = False
    discarded: bool = False


def check_mileage(
    mileage: Optional[int],
    *,
    model_year: Optional[int],
    reference_year: int,
    trim: Optional[str],
    policy: MileagePolicy,
) -> MileageCheck:
    """Keep, decimal-correct or discard a reported mileage against the plausibility ceiling."""
    if mileage is None:
        return MileageCheck(mileage=None)
    if mileage < 0:
        return MileageCheck(mileage=None, original=mileage, discarded=True)

    ceiling = policy.ceiling(model_year, reference_year, trim)
    if mileage <= ceiling:
        return MileageCheck(mileage=mileage, original=mileage)

    for divisor in DECIMAL_SHIFTS:
        candidate = mileage // divisor
        if candidate <= ceiling:
            return MileageCheck(mileage=candidate, original=mileage, corrected=True)
    return MileageCheck(mileage=None, original=mileage, discarded=True)
