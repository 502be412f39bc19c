"""Model, generation and trim-class reference data shared by the VIN decoder and the title inferencer."""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

MODEL_911 = "911"
MODEL_CAYMAN = "718 Cayman"
MODEL_BOXSTER = "718 Boxster"

# (generation, first model year, last model year or None when still current);
# ranges never overlap within one family.
GENERATION_RANGES: Dict[str, List[Tuple[str, int, Optional[int]]]] = {
    MODEL_911: [
        ("964", 1989, 1994),
        ("993", 1995, 1998),
        ("996", 1999, 2004),
        ("997.1", 2005, 2008),
        ("997.2", 2009, 2011),
        ("991.1", 2012, 2016),
        ("991.2", 2017, 2019),
        ("992.1", 2020, 2024),
        ("992.2", 2025, None),
    ],
    "mid-engine": [
        ("986", 1997, 2004),
        ("987.1", 2005, 2008),
        ("987.2", 2009, 2012),
        ("981", 2013, 2016),
        ("982", 2017, None),
    ],
}

MODEL_FAMILY = {
    MODEL_911: MODEL_911,
    MODEL_CAYMAN: "mid-engine",
    MODEL_BOXSTER: "mid-engine",
}

# Most specific first so "991.2" is never read as "991".
GENERATION_TOKENS = (
    "992.2", "992.1", "992",
    "991.2", "991.1", "991",
    "997.2", "997.1", "997",
    "996", "993", "964",
    "982", "981",
    "987.2", "987.1", "987",
    "986",
)

_TRACK_TRIM = re.compile(r"\b(GT2|GT3|GT4|RS|R)\b", re.IGNORECASE)


def family_for_model(model: Optional[str]) -> Optional[str]:
    if not model:
        return None
    return MODEL_FAMILY.get(model)


def generation_for_year(model: Optional[str], year: Optional[int]) -> Optional[str]:
    """Generation whose model-year range contains ``year`` for the model's family."""
    family = family_for_model(model)
    if family is None or year is None:
        return None
    for generation, start, end in GENERATION_RANGES[family]:
        if year >= start and (end is None or year <= end):
            return generation
    return None


def family_for_generation(generation: Optional[str]) -> Optional[str]:
    if not generation:
        return None
    base = generation.split(".", 1)[0]
    for family, ranges in GENERATION_RANGES.items():
        if any(gen.split(".", 1)[0] == base for gen, _, _ in ranges):
            return family
    return None


def default_model_for_generation(generation: Optional[str]) -> Optional[str]:
    family = family_for_generation(generation)
    if family == MODEL_911:
        return MODEL_911
    # mid-engine generation tokens do not say Cayman or Boxster
    return None


def is_track_trim(trim: Optional[str]) -> bool:
    return bool(trim and _TRACK_TRIM.search(trim))
