"""Structural VIN decoding for Porsche sports cars.

``decode`` never raises: malformed or foreign VINs come back as an invalid
result, everything else carries a confidence tier describing how much of
year/model/trim/generation the VIN pinned down.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from listingcore.app.enrichment.reference import (
    MODEL_911,
    MODEL_BOXSTER,
    MODEL_CAYMAN,
    generation_for_year,
)

VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")

MANUFACTURER_CODES = {
    "WP0": "Porsche (passenger car)",
    "WP1": "Porsche (SUV)",
}

PLANT_CODES = {
    "S": "Stuttgart-Zuffenhausen",
    "K": "Osnabrueck",
    "U": "Uusikaupunki",
    "L": "Leipzig",
}

_YEAR_LETTERS = "ABCDEFGHJKLMNPRSTVWXY"
# position-10 code -> model year in the 1980-2009 cycle
YEAR_CODES: Dict[str, int] = {code: 1980 + idx for idx, code in enumerate(_YEAR_LETTERS)}
YEAR_CODES.update({str(digit): 2000 + digit for digit in range(1, 10)})

_TRANSLITERATION = {
    **{str(d): d for d in range(10)},
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5, "F": 6, "G": 7, "H": 8,
    "J": 1, "K": 2, "L": 3, "M": 4, "N": 5, "P": 7, "R": 9,
    "S": 2, "T": 3, "U": 4, "V": 5, "W": 6, "X": 7, "Y": 8, "Z": 9,
}
_WEIGHTS = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)

# positions 7-8 -> platform line
PLATFORMS = {
    "96": "911-classic",
    "99": "911-classic",
    "A9": "911-modern",
    "98": "mid-engine-classic",
    "A8": "mid-engine-modern",
}

# position 5 -> (trim, certain); an uncertain code is shared by several trims
VARIANTS: Dict[str, Dict[str, Tuple[Optional[str], bool]]] = {
    "911-classic": {
        "A": ("Carrera", False),
        "B": ("Turbo", False),
        "C": ("GT3", False),
        "D": ("GT2", False),
    },
    "911-modern": {
        "A": ("Carrera", False),
        "B": ("Carrera S", False),
        "C": ("GT3", False),
        "D": ("Turbo", False),
        "E": ("Turbo S", True),
        "F": ("GT3 RS", True),
        "G": ("GT2 RS", True),
    },
    "mid-engine-classic": {
        "A": (None, False),
        "B": ("S", False),
    },
    "mid-engine-modern": {
        "A": (None, False),
        "B": ("S", False),
        "C": ("GT4", False),
        "D": ("GTS", False),
        "E": ("GT4 RS", True),
        "F": ("Spyder", False),
    },
}

BODY_STYLES_911 = {"A": "Coupe", "B": "Targa", "C": "Cabriolet"}


class VinConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INVALID = "invalid"


@dataclass(frozen=True)
class DecodedVin:
    vin: str
    valid: bool
    confidence: VinConfidence
    model_year: Optional[int] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    generation: Optional[str] = None
    body_style: Optional[str] = None
    plant: Optional[str] = None
    manufacturer: Optional[str] = None
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def invalid(cls, vin: str, *errors: str) -> "DecodedVin":
        return cls(vin=vin, valid=False, confidence=VinConfidence.INVALID, errors=tuple(errors))


def clean_vin(vin: Optional[str]) -> str:
    if not vin:
        return ""
    return re.sub(r"\s+", "", str(vin)).upper()


def is_well_formed(vin: Optional[str]) -> bool:
    """17 characters from the VIN alphabet (no I, O or Q)."""
    return bool(VIN_PATTERN.match(clean_vin(vin)))


def check_digit(vin: str) -> str:
    total = sum(_TRANSLITERATION[char] * weight for char, weight in zip(vin, _WEIGHTS))
    remainder = total % 11
    return "X" if remainder == 10 else str(remainder)


def decode_model_year(vin: str) -> Optional[int]:
    """Position 10, with position 7 picking the cycle: numeric 1980-2009, letter 2010-2039."""
    year = YEAR_CODES.get(vin[9])
    if year is None:
        return None
    if vin[6].isalpha():
        year += 30
    return year


def _model_for(platform: str, body_code: str) -> Optional[str]:
    if platform.startswith("911"):
        return MODEL_911
    if body_code in {"A", "B"}:
        return MODEL_CAYMAN
    if body_code == "C":
        return MODEL_BOXSTER
    return None


def decode(vin: Optional[str], *, reference_year: Optional[int] = None) -> DecodedVin:
    """Decode a VIN into year/model/trim/generation with a confidence tier.

    ``reference_year`` is the year the VIN was observed in; a model year more
    than one year past it is treated as suspicious and drops the result to low
    confidence. Without it no plausibility check is made, keeping the call pure.
    """
    cleaned = clean_vin(vin)
    if len(cleaned) != 17:
        return DecodedVin.invalid(cleaned, f"VIN must be 17 characters, got {len(cleaned)}")
    if not VIN_PATTERN.match(cleaned):
        return DecodedVin.invalid(cleaned, "VIN contains characters outside the VIN alphabet (I, O, Q or symbols)")

    wmi = cleaned[:3]
    manufacturer = MANUFACTURER_CODES.get(wmi)
    if manufacturer is None:
        return DecodedVin.invalid(cleaned, f"Unrecognised manufacturer code {wmi}")

    model_year = decode_model_year(cleaned)
    if model_year is None:
        return DecodedVin.invalid(cleaned, f"Undecodable model year code {cleaned[9]}")

    errors = []
    platform = PLATFORMS.get(cleaned[6:8]) if wmi == "WP0" else None
    model = _model_for(platform, cleaned[3]) if platform else None
    trim, trim_certain = VARIANTS.get(platform, {}).get(cleaned[4], (None, False)) if platform else (None, False)
    generation = generation_for_year(model, model_year) if model else None
    if model and generation is None:
        errors.append(f"Model year {model_year} does not fit the {model} platform code")
    body_style = None
    if model == MODEL_911:
        body_style = BODY_STYLES_911.get(cleaned[3])
    elif model == MODEL_CAYMAN:
        body_style = "Coupe"
    elif model == MODEL_BOXSTER:
        body_style = "Roadster"

    if model and generation and trim and trim_certain:
        confidence = VinConfidence.HIGH
    elif model and generation:
        confidence = VinConfidence.MEDIUM
    else:
        confidence = VinConfidence.LOW

    expected = check_digit(cleaned)
    if cleaned[8] != expected:
        errors.append(f"Check digit {cleaned[8]} does not match computed {expected}")
        if confidence is VinConfidence.HIGH:
            confidence = VinConfidence.MEDIUM

    if reference_year is not None and model_year > reference_year + 1:
        errors.append(f"Model year {model_year} is later than {reference_year + 1}")
        confidence = VinConfidence.LOW

    return DecodedVin(
        vin=cleaned,
        valid=True,
        confidence=confidence,
        model_year=model_year,
        model=model,
        trim=trim,
        generation=generation,
        body_style=body_style,
        plant=PLANT_CODES.get(cleaned[10]),
        manufacturer=manufacturer,
        errors=tuple(errors),
    )
