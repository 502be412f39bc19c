"""Fill year, model, trim and generation for a scraped listing.

VIN-decoded values come first and their confidence decides whether the
listing title may override them; ordered title rules fill the rest, then
mileage is sanity-checked, the generation falls back to the model-year
table and the exterior color is mapped to its canonical paint name.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Pattern, Set, Tuple

from listingcore.app.catalog.colors import ColorCatalog, default_color_catalog
from listingcore.app.core.records import EnrichedListing, ListingCandidate
from listingcore.app.enrichment.mileage import MileagePolicy, check_mileage
from listingcore.app.enrichment.reference import (
    GENERATION_TOKENS,
    MODEL_911,
    MODEL_BOXSTER,
    MODEL_CAYMAN,
    default_model_for_generation,
    family_for_generation,
    family_for_model,
    generation_for_year,
)
from listingcore.app.enrichment.vin_decoder import DecodedVin, VinConfidence, clean_vin, is_well_formed

logger = logging.getLogger(__name__)

VIN_DECODED = "vin-decoded"
TITLE_INFERRED = "title-inferred"
YEAR_INFERRED = "year-inferred"
SOURCE_PROVIDED = "source-provided"

INFERRED_FIELDS = ("year", "model", "trim", "generation")

MID_ENGINE = (MODEL_CAYMAN, MODEL_BOXSTER)


@dataclass(frozen=True)
class Rule:
    pattern: Pattern[str]
    value: str
    models: Optional[Tuple[str, ...]] = None

    def applies_to(self, model: Optional[str]) -> bool:
        return self.models is None or (model is not None and model in self.models)


def _rule(pattern: str, value: str, models: Optional[Tuple[str, ...]] = None) -> Rule:
    return Rule(re.compile(pattern, re.IGNORECASE), value, models)


YEAR_PATTERN = re.compile(r"\b(19[5-9]\d|20[0-4]\d)\b")

# first match wins
MODEL_RULES = (
    _rule(r"\bCayenne\b", "Cayenne"),
    _rule(r"\bMacan\b", "Macan"),
    _rule(r"\bPanamera\b", "Panamera"),
    _rule(r"\bTaycan\b", "Taycan"),
    _rule(r"\b918\b", "918 Spyder"),
    _rule(r"\bCarrera[\s-]?GT\b", "Carrera GT"),
    _rule(r"\bCayman\b", MODEL_CAYMAN),
    _rule(r"\bBoxster\b", MODEL_BOXSTER),
    _rule(r"\b911\b", MODEL_911),
    _rule(r"\bGT[23](?:[\s-]?RS)?\b|\bCarrera\b|\bTarga\b|\bTurbo\b|\bSpeedster\b", MODEL_911),
    _rule(r"\bGT4(?:[\s-]?(?:RS|Clubsport))?\b", MODEL_CAYMAN),
    _rule(r"\bSpyder\b", MODEL_BOXSTER),
)

# most specific first: "GT3 RS" before "GT3", "GTS 4.0" before "GTS"
TRIM_RULES = (
    _rule(r"\bGT2[\s-]?RS\b", "GT2 RS", (MODEL_911,)),
    _rule(r"\bGT3[\s-]?RS\b", "GT3 RS", (MODEL_911,)),
    _rule(r"\bGT4[\s-]?RS\b", "GT4 RS", (MODEL_CAYMAN,)),
    _rule(r"\bSpyder[\s-]?RS\b", "Spyder RS", (MODEL_BOXSTER,)),
    _rule(r"\bGT3[\s-]?Touring\b", "GT3 Touring", (MODEL_911,)),
    _rule(r"\bGT4[\s-]?Clubsport\b", "GT4 Clubsport", (MODEL_CAYMAN,)),
    _rule(r"\bGT3\b", "GT3", (MODEL_911,)),
    _rule(r"\bGT2\b", "GT2", (MODEL_911,)),
    _rule(r"\bGT4\b", "GT4", (MODEL_CAYMAN,)),
    _rule(r"\bTurbo[\s-]?S\b", "Turbo S", (MODEL_911,)),
    _rule(r"\bTurbo\b", "Turbo", (MODEL_911,)),
    _rule(r"\bSport[\s-]?Classic\b", "Sport Classic", (MODEL_911,)),
    _rule(r"\bSpeedster\b", "Speedster", (MODEL_911,)),
    _rule(r"\bTarga[\s-]?4[\s-]?GTS\b", "Targa 4 GTS", (MODEL_911,)),
    _rule(r"\bCarrera[\s-]?4[\s-]?GTS\b", "Carrera 4 GTS", (MODEL_911,)),
    _rule(r"\b(?:Carrera[\s-]?)?GTS\b", "Carrera GTS", (MODEL_911,)),
    _rule(r"\bGTS[\s-]?4\.0\b", "GTS 4.0", MID_ENGINE),
    _rule(r"\bGTS\b", "GTS", MID_ENGINE),
    _rule(r"\bCarrera[\s-]?4[\s-]?S\b", "Carrera 4S", (MODEL_911,)),
    _rule(r"\bCarrera[\s-]?S\b", "Carrera S", (MODEL_911,)),
    _rule(r"\bCarrera[\s-]?4\b", "Carrera 4", (MODEL_911,)),
    _rule(r"\bCarrera[\s-]?T\b", "Carrera T", (MODEL_911,)),
    _rule(r"\bTarga[\s-]?4[\s-]?S\b", "Targa 4S", (MODEL_911,)),
    _rule(r"\bTarga[\s-]?4\b", "Targa 4", (MODEL_911,)),
    _rule(r"\bTarga\b", "Targa", (MODEL_911,)),
    _rule(r"\bCarrera\b", "Carrera", (MODEL_911,)),
    _rule(r"\b911[\s-]?R\b", "R", (MODEL_911,)),
    _rule(r"\bSpyder\b", "Spyder", (MODEL_BOXSTER,)),
    _rule(r"\b(?:Cayman|Boxster)[\s-]+S\b", "S", MID_ENGINE),
    _rule(r"\b(?:Cayman|Boxster)[\s-]+T\b", "T", MID_ENGINE),
)

GENERATION_PATTERN = re.compile(
    r"(?<![\d.,])(" + "|".join(re.escape(token) for token in GENERATION_TOKENS) + r")(?![\d,]|\.\d)"
)


def _first_match(rules, text: str, model: Optional[str] = None) -> Optional[str]:
    for rule in rules:
        if rule.applies_to(model) and rule.pattern.search(text):
            return rule.value
    return None


def title_year(title: str) -> Optional[int]:
    match = YEAR_PATTERN.search(title or "")
    return int(match.group(1)) if match else None


def title_model(title: str) -> Optional[str]:
    return _first_match(MODEL_RULES, title or "")


def title_trim(title: str, model: Optional[str]) -> Optional[str]:
    return _first_match(TRIM_RULES, title or "", model)


def title_generation(title: str, model: Optional[str]) -> Optional[str]:
    """First generation token literally present in the title that fits the model's family."""
    family = family_for_model(model)
    for match in GENERATION_PATTERN.finditer(title or ""):
        token = match.group(1)
        if family is None or family_for_generation(token) == family:
            return token
    return None


def _refines(candidate, current) -> bool:
    if not isinstance(candidate, str) or not isinstance(current, str):
        return False
    return len(candidate) > len(current) and candidate.lower().startswith(current.lower())


class _FieldState:
    def __init__(self) -> None:
        self.values: Dict[str, object] = {name: None for name in INFERRED_FIELDS}
        self.provenance: Dict[str, str] = {}
        self.locked: Set[str] = set()
        self.vin_tiers: Dict[str, VinConfidence] = {}

    def set(self, name: str, value, tag: str) -> None:
        self.values[name] = value
        self.provenance[name] = tag

    def offer(self, name: str, value, tag: str) -> None:
        """Take ``value`` unless the current one should win."""
        if value is None or name in self.locked:
            return
        current = self.values[name]
        if current is None:
            self.set(name, value, tag)
            return
        if self.provenance.get(name) != VIN_DECODED or value == current:
            return
        tier = self.vin_tiers.get(name)
        if tier is VinConfidence.LOW or (tier is VinConfidence.MEDIUM and _refines(value, current)):
            self.set(name, value, tag)
            self.vin_tiers.pop(name, None)


def _seed_from_vin(state: _FieldState, decoded: DecodedVin) -> None:
    vin_values = {
        "year": decoded.model_year,
        "model": decoded.model,
        "trim": decoded.trim,
        "generation": decoded.generation,
    }
    for name, value in vin_values.items():
        if value is None:
            continue
        if decoded.confidence is VinConfidence.HIGH:
            state.set(name, value, VIN_DECODED)
            state.locked.add(name)
        elif state.values[name] is None:
            state.set(name, value, VIN_DECODED)
            state.vin_tiers[name] = decoded.confidence


def _apply_title(state: _FieldState, title: str) -> None:
    state.offer("year", title_year(title), TITLE_INFERRED)
    state.offer("model", title_model(title), TITLE_INFERRED)
    model = state.values["model"]
    state.offer("trim", title_trim(title, model), TITLE_INFERRED)
    generation = title_generation(title, model)
    if generation and state.values["model"] is None:
        state.offer("model", default_model_for_generation(generation), TITLE_INFERRED)
    state.offer("generation", generation, TITLE_INFERRED)


def enrich(
    candidate: ListingCandidate,
    decoded: Optional[DecodedVin] = None,
    *,
    policy: Optional[MileagePolicy] = None,
    colors: Optional[ColorCatalog] = None,
) -> EnrichedListing:
    """Resolve year/model/trim/generation, a plausible mileage and the paint for one candidate.

    Never raises on ambiguity: unknown stays ``None``, and no trim is invented
    when neither the VIN nor the title names one.
    """
    policy = policy or MileagePolicy.from_settings()
    state = _FieldState()
    flags = []

    identity_vin = None
    raw_vin = clean_vin(candidate.vin)
    if raw_vin:
        if is_well_formed(raw_vin):
            identity_vin = raw_vin
        else:
            flags.append("vin-malformed")

    if candidate.year is not None:
        state.set("year", candidate.year, SOURCE_PROVIDED)

    vin_confidence = None
    if decoded is not None:
        vin_confidence = decoded.confidence.value
        if decoded.valid:
            _seed_from_vin(state, decoded)
        else:
            flags.append(f"vin-confidence={VinConfidence.INVALID.value}")

    if not all(name in state.locked for name in INFERRED_FIELDS):
        _apply_title(state, candidate.title)

    trim = state.values["trim"]
    year = state.values["year"]
    mileage_check = check_mileage(
        candidate.mileage,
        model_year=year,
        reference_year=candidate.reference_year,
        trim=trim,
        policy=policy,
    )
    if mileage_check.corrected:
        flags.append("mileage-corrected")
        logger.info(
            "mileage %s corrected to %s for %s", mileage_check.original, mileage_check.mileage, candidate.source_url
        )
    elif mileage_check.discarded:
        flags.append("mileage-discarded")
        logger.info("implausible mileage %s discarded for %s", mileage_check.original, candidate.source_url)

    # fills a missing generation, or replaces a low-confidence VIN one once the year moved
    state.offer("generation", generation_for_year(state.values["model"], year), YEAR_INFERRED)

    color = (colors or default_color_catalog()).normalize(candidate.exterior_color)
    if color.wrapped:
        flags.append("color-wrapped")
    if color.paint_to_sample:
        flags.append("paint-to-sample")

    return EnrichedListing(
        source=candidate.source,
        source_url=candidate.source_url,
        title=candidate.title,
        vin=identity_vin,
        year=state.values["year"],
        model=state.values["model"],
        trim=trim,
        generation=state.values["generation"],
        price=candidate.price,
        mileage=mileage_check.mileage,
        exterior_color=color.name,
        interior_color=candidate.interior_color,
        location=candidate.location,
        options_text=candidate.options_text,
        sold_date=candidate.sold_date,
        scraped_at=candidate.scraped_at,
        vin_confidence=vin_confidence,
        provenance=state.provenance,
        flags=flags,
        paint_to_sample=color.paint_to_sample,
    )
