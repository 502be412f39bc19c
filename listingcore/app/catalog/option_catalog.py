from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from listingcore.app.db.store import CatalogOption

_PUNCTUATION = re.compile(r"[\-\u2010-\u2015/&+,.;:()\[\]'\"!]+")
_WHITESPACE = re.compile(r"\s+")

# containment matches on shorter keys are too loose ("s", "ac")
MIN_CONTAINMENT_KEY = 3


def match_key(name: str) -> str:
    """Case-folded, dash/punctuation-insensitive, whitespace-collapsed form of an option name."""
    lowered = (name or "").casefold()
    lowered = _PUNCTUATION.sub(" ", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def keys_overlap(a: str, b: str) -> bool:
    """Equal, or one contains the other (both already match keys)."""
    if not a or not b:
        return False
    return a == b or a in b or b in a


class OptionCatalog:
    """Read-only index over the canonical option list."""

    def __init__(self, entries: Iterable[CatalogOption]):
        self._entries: List[CatalogOption] = list(entries)
        self._by_key: Dict[str, CatalogOption] = {}
        for entry in self._entries:
            self._by_key.setdefault(match_key(entry.name), entry)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Sequence[CatalogOption]:
        return tuple(self._entries)

    def match(self, name: str) -> Optional[CatalogOption]:
        """Exact key first, then containment either way; the closest length wins."""
        key = match_key(name)
        if not key:
            return None
        exact = self._by_key.get(key)
        if exact is not None:
            return exact
        if len(key) < MIN_CONTAINMENT_KEY:
            return None
        candidates: List[Tuple[int, str, CatalogOption]] = []
        for entry_key, entry in self._by_key.items():
            if len(entry_key) < MIN_CONTAINMENT_KEY:
                continue
            if entry_key in key or key in entry_key:
                candidates.append((abs(len(entry_key) - len(key)), entry.name, entry))
        if not candidates:
            return None
        candidates.sort(key=lambda item: (item[0], item[1]))
        return candidates[0][2]
