from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import yaml

from listingcore.app.catalog.option_catalog import keys_overlap, match_key

DEFAULT_RULES_PATH = Path(__file__).with_name("standard_equipment.yaml")


@dataclass(frozen=True)
class StandardEquipmentRule:
    model: str
    trim: str
    features: Tuple[str, ...]
    generation: Optional[str] = None
    year_start: Optional[int] = None
    year_end: Optional[int] = None

    def applies(self, model: str, trim: str, generation: Optional[str], year: Optional[int]) -> bool:
        if self.model.lower() != model.lower() or self.trim.lower() != trim.lower():
            return False
        if self.generation:
            if not generation:
                return False
            wanted = self.generation.lower()
            actual = generation.lower()
            if actual != wanted and not actual.startswith(wanted + "."):
                return False
        if year is not None:
            if self.year_start is not None and year < self.year_start:
                return False
            if self.year_end is not None and year > self.year_end:
                return False
        return True


def _parse_rule(raw: Dict[str, Any]) -> StandardEquipmentRule:
    years = raw.get("years") or {}
    generation = raw.get("generation")
    return StandardEquipmentRule(
        model=str(raw["model"]),
        trim=str(raw["trim"]),
        features=tuple(str(feature) for feature in raw.get("features") or ()),
        generation=str(generation) if generation is not None else None,
        year_start=years.get("start"),
        year_end=years.get("end"),
    )


class StandardEquipmentCatalog:
    """Standard-equipment rules keyed by model/trim with optional generation and year constraints."""

    def __init__(self, rules: Iterable[StandardEquipmentRule]):
        self.rules: List[StandardEquipmentRule] = list(rules)

    @classmethod
    def from_yaml(cls, path: Path) -> "StandardEquipmentCatalog":
        with open(path, "r", encoding="utf-8") as fh:
            payload = yaml.safe_load(fh) or {}
        return cls(_parse_rule(raw) for raw in payload.get("rules", []))

    def standard_features(
        self, model: str, trim: str, generation: Optional[str] = None, year: Optional[int] = None
    ) -> List[str]:
        seen: Set[str] = set()
        features: List[str] = []
        for rule in self.rules:
            if not rule.applies(model, trim, generation, year):
                continue
            for feature in rule.features:
                if feature not in seen:
                    seen.add(feature)
                    features.append(feature)
        return features

    def is_standard(
        self, option: str, model: str, trim: str, generation: Optional[str] = None, year: Optional[int] = None
    ) -> bool:
        key = match_key(option)
        return any(
            keys_overlap(key, match_key(feature))
            for feature in self.standard_features(model, trim, generation, year)
        )

    def filter_standard(
        self,
        options: Sequence[str],
        model: Optional[str],
        trim: Optional[str],
        generation: Optional[str] = None,
        year: Optional[int] = None,
    ) -> List[str]:
        """Drop options that ship standard on this configuration; unknown model/trim filters nothing."""
        if not model or not trim:
            return list(options)
        feature_keys = [match_key(feature) for feature in self.standard_features(model, trim, generation, year)]
        if not feature_keys:
            return list(options)
        kept = []
        for option in options:
            key = match_key(option)
            if any(keys_overlap(key, feature_key) for feature_key in feature_keys):
                continue
            kept.append(option)
        return kept


@lru_cache(maxsize=1)
def default_standard_equipment() -> StandardEquipmentCatalog:
    return StandardEquipmentCatalog.from_yaml(DEFAULT_RULES_PATH)
