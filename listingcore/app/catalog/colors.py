"""Exterior color normalization and Paint to Sample detection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import yaml

DEFAULT_COLORS_PATH = Path(__file__).with_name("exterior_colors.yaml")

PAINT_TO_SAMPLE_OPTION = "Paint to Sample"

_BRACKETED = re.compile(r"\[[^\]]*\]")
_EMPTY_PARENS = re.compile(r"\(\s*\)")
_EDGE_PUNCTUATION = re.compile(r"^[\s\-/,()]+|[\s\-/,()]+$")
_WHITESPACE = re.compile(r"\s+")
_METALLIC_SUFFIX = re.compile(r"\s+metallic$")
# an unmapped name is kept only if it reads like a paint name
_PLAIN_COLOR_NAME = re.compile(r"^[A-Z][A-Za-z ]+$")
MAX_PLAIN_COLOR_WORDS = 4


def _key(name: str) -> str:
    key = _WHITESPACE.sub(" ", name.casefold()).strip()
    return _METALLIC_SUFFIX.sub("", key)


@dataclass(frozen=True)
class ColorResult:
    name: Optional[str]
    paint_to_sample: bool = False
    wrapped: bool = False


class ColorCatalog:
    def __init__(
        self,
        aliases: Dict[str, Iterable[str]],
        pts_indicators: Iterable[str] = (),
        pts_colors: Iterable[str] = (),
        wrap_indicators: Iterable[str] = (),
    ):
        self._by_key: Dict[str, str] = {}
        for canonical, spellings in aliases.items():
            self._by_key[_key(canonical)] = canonical
            for spelling in spellings or ():
                self._by_key.setdefault(_key(spelling), canonical)
        # longest first so "paint-to-sample" is stripped before "pts" could match inside it
        indicators = sorted((str(item) for item in pts_indicators), key=len, reverse=True)
        self._pts_pattern = (
            re.compile(r"\b(?:" + "|".join(re.escape(item) for item in indicators) + r")\b", re.IGNORECASE)
            if indicators
            else None
        )
        self._pts_colors: Tuple[str, ...] = tuple(color.casefold() for color in pts_colors)
        self._wrap_pattern = (
            re.compile(r"\b(?:" + "|".join(re.escape(item) for item in wrap_indicators) + r")\b", re.IGNORECASE)
            if wrap_indicators
            else None
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ColorCatalog":
        with open(path, "r", encoding="utf-8") as fh:
            payload = yaml.safe_load(fh) or {}
        pts = payload.get("paint_to_sample") or {}
        return cls(
            payload.get("colors") or {},
            pts_indicators=pts.get("indicators") or (),
            pts_colors=pts.get("known_colors") or (),
            wrap_indicators=payload.get("wrap_indicators") or (),
        )

    def normalize(self, raw: Optional[str]) -> ColorResult:
        """Canonical color name for a reported exterior color.

        Wrapped cars and unreadable names come back as ``None``; Paint to Sample
        is flagged from an explicit marker or a known sample color.
        """
        if raw is None or not str(raw).strip():
            return ColorResult(None)
        text = _BRACKETED.sub(" ", str(raw))
        if self._wrap_pattern is not None and self._wrap_pattern.search(text):
            return ColorResult(None, wrapped=True)

        paint_to_sample = False
        if self._pts_pattern is not None and self._pts_pattern.search(text):
            paint_to_sample = True
            text = self._pts_pattern.sub(" ", text)
        text = _EDGE_PUNCTUATION.sub("", _WHITESPACE.sub(" ", _EMPTY_PARENS.sub(" ", text)))
        if not text:
            return ColorResult(None, paint_to_sample=paint_to_sample)

        if any(color in text.casefold() for color in self._pts_colors):
            paint_to_sample = True

        name = self._by_key.get(_key(text))
        if name is None and _PLAIN_COLOR_NAME.match(text) and len(text.split()) <= MAX_PLAIN_COLOR_WORDS:
            name = text
        return ColorResult(name, paint_to_sample=paint_to_sample)


@lru_cache(maxsize=1)
def default_color_catalog() -> ColorCatalog:
    return ColorCatalog.from_yaml(DEFAULT_COLORS_PATH)
