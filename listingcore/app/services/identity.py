"""Decide whether a listing is new, a re-scrape, a same-sale duplicate or a relist, and write it.

Decisions are pure (``decide``) and the merge rules are tables of
``FieldPolicy`` per column, so each outcome's behaviour can be read off the
tables below.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from listingcore.app.core.records import EnrichedListing, ListingRecord, ensure_utc
from listingcore.app.core.retry import call_with_retry
from listingcore.app.core.settings import settings
from listingcore.app.db.store import ListingConflictError, ListingStore, TransientStoreError

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    NEW = "new"
    UPDATE = "update"
    DUPLICATE_MERGE = "duplicate_merge"
    RELIST = "relist"


class FieldPolicy(str, Enum):
    INCOMING = "incoming"  # take the incoming value, even when empty
    PREFER_INCOMING = "prefer_incoming"  # incoming unless it is empty
    PREFER_EXISTING = "prefer_existing"  # existing unless it is empty
    LATEST = "latest"  # later of the two timestamps
    TOUCH = "touch"  # later timestamp, only when another column changed


class ResolutionConflictError(Exception):
    """Uniqueness conflict persisted after re-resolving once."""


IDENTITY_FIELDS = ("source", "title", "vin", "year", "model", "trim", "generation", "location")
MUTABLE_FIELDS = ("price", "mileage", "exterior_color", "interior_color", "options_text", "sold_date")

UPDATE_POLICY: Dict[str, FieldPolicy] = {
    **{name: FieldPolicy.PREFER_INCOMING for name in IDENTITY_FIELDS},
    **{name: FieldPolicy.PREFER_INCOMING for name in MUTABLE_FIELDS},
    "scraped_at": FieldPolicy.LATEST,
}

DUPLICATE_MERGE_POLICY: Dict[str, FieldPolicy] = {
    **{name: FieldPolicy.PREFER_EXISTING for name in IDENTITY_FIELDS},
    **{name: FieldPolicy.PREFER_EXISTING for name in MUTABLE_FIELDS},
    "scraped_at": FieldPolicy.TOUCH,
}

RELIST_POLICY: Dict[str, FieldPolicy] = {
    **{name: FieldPolicy.PREFER_EXISTING for name in IDENTITY_FIELDS},
    "source": FieldPolicy.INCOMING,
    "source_url": FieldPolicy.INCOMING,
    "title": FieldPolicy.PREFER_INCOMING,
    "location": FieldPolicy.PREFER_INCOMING,
    "price": FieldPolicy.PREFER_INCOMING,
    "sold_date": FieldPolicy.INCOMING,
    "mileage": FieldPolicy.PREFER_EXISTING,
    "exterior_color": FieldPolicy.PREFER_EXISTING,
    "interior_color": FieldPolicy.PREFER_EXISTING,
    "options_text": FieldPolicy.PREFER_EXISTING,
    "scraped_at": FieldPolicy.LATEST,
}

# an older sale seen after a newer one only fills gaps
STALE_RELIST_POLICY = DUPLICATE_MERGE_POLICY


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def _same(a: Any, b: Any) -> bool:
    return _comparable(a) == _comparable(b)


def _apply_policy(policy: FieldPolicy, current: Any, offered: Any) -> Any:
    if policy is FieldPolicy.INCOMING:
        return offered
    if policy is FieldPolicy.PREFER_INCOMING:
        return current if _is_empty(offered) else offered
    if policy is FieldPolicy.PREFER_EXISTING:
        return offered if _is_empty(current) else current
    # LATEST / TOUCH
    if current is None:
        return offered
    if offered is None:
        return current
    return max(ensure_utc(current), ensure_utc(offered))


def merge_fields(
    existing: ListingRecord,
    incoming: Mapping[str, Any],
    policy: Mapping[str, FieldPolicy],
    incoming_provenance: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Columns of ``existing`` that change under ``policy``; empty when nothing does."""
    changes: Dict[str, Any] = {}
    touched: Dict[str, Any] = {}
    provenance = dict(existing.provenance or {})
    for name, rule in policy.items():
        if name not in incoming:
            continue
        current = getattr(existing, name)
        value = _apply_policy(rule, current, incoming[name])
        if _same(value, current):
            continue
        if rule is FieldPolicy.TOUCH:
            touched[name] = value
            continue
        changes[name] = value
        if incoming_provenance and name in incoming_provenance and _same(value, incoming[name]):
            provenance[name] = incoming_provenance[name]
    if changes:
        changes.update(touched)
        if provenance != (existing.provenance or {}):
            changes["provenance"] = provenance
    return changes


@dataclass(frozen=True)
class ResolutionDecision:
    resolution: Resolution
    target_id: Optional[int]
    values: Dict[str, Any]  # full row for NEW, changed columns otherwise
    delete_id: Optional[int] = None
    adopt_options: bool = False
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolutionResult:
    resolution: Resolution
    listing_id: int
    changed: bool
    adopt_options: bool
    merged_away_id: Optional[int] = None
    notes: Tuple[str, ...] = field(default_factory=tuple)


def _same_sale_day(a: Optional[date], b: Optional[date]) -> bool:
    return a is not None and b is not None and a == b


def _is_stale_relist(incoming: Optional[date], stored: Optional[date]) -> bool:
    """An older sale, or an unsold page, never replaces a recorded sale."""
    if stored is None:
        return False
    return incoming is None or incoming < stored


def _adopts_options(incoming: EnrichedListing, resulting_text: Optional[str]) -> bool:
    """Whether the incoming option set should replace the row's associations."""
    if not _is_empty(incoming.options_text):
        return resulting_text == incoming.options_text
    # a sample paint alone only speaks for rows without options text
    return incoming.paint_to_sample and _is_empty(resulting_text)


def decide(
    incoming: EnrichedListing,
    by_url: Optional[ListingRecord],
    by_vin: Optional[ListingRecord],
) -> ResolutionDecision:
    values = incoming.record_fields()
    provenance = values.pop("provenance")

    def _merge(existing: ListingRecord, policy, offered=values):
        changes = merge_fields(existing, offered, policy, provenance)
        text = changes.get("options_text", existing.options_text)
        return changes, _adopts_options(incoming, text)

    if by_url is not None:
        if by_vin is not None and by_vin.id != by_url.id:
            if _same_sale_day(incoming.sold_date, by_vin.sold_date):
                changes, adopt = _merge(by_vin, DUPLICATE_MERGE_POLICY)
                return ResolutionDecision(
                    Resolution.DUPLICATE_MERGE,
                    by_vin.id,
                    changes,
                    delete_id=by_url.id,
                    adopt_options=adopt,
                    notes=("url-row-merged-into-vin-row",),
                )
            without_vin = {name: value for name, value in values.items() if name != "vin"}
            changes, adopt = _merge(by_url, UPDATE_POLICY, without_vin)
            return ResolutionDecision(
                Resolution.UPDATE, by_url.id, changes, adopt_options=adopt, notes=("vin-held-elsewhere",)
            )
        changes, adopt = _merge(by_url, UPDATE_POLICY)
        return ResolutionDecision(Resolution.UPDATE, by_url.id, changes, adopt_options=adopt)

    if by_vin is None:
        return ResolutionDecision(
            Resolution.NEW,
            None,
            {**values, "provenance": dict(provenance)},
            adopt_options=_adopts_options(incoming, incoming.options_text),
        )

    if _same_sale_day(incoming.sold_date, by_vin.sold_date):
        changes, adopt = _merge(by_vin, DUPLICATE_MERGE_POLICY)
        return ResolutionDecision(Resolution.DUPLICATE_MERGE, by_vin.id, changes, adopt_options=adopt)

    if _is_stale_relist(incoming.sold_date, by_vin.sold_date):
        changes, adopt = _merge(by_vin, STALE_RELIST_POLICY)
        return ResolutionDecision(Resolution.RELIST, by_vin.id, changes, adopt_options=adopt, notes=("stale-relist",))

    changes, adopt = _merge(by_vin, RELIST_POLICY)
    return ResolutionDecision(Resolution.RELIST, by_vin.id, changes, adopt_options=adopt)


class IdentityResolver:
    """Applies ``decide`` against a store, retrying transient failures and re-resolving once on conflict."""

    def __init__(
        self,
        store: ListingStore,
        *,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.max_attempts = max_attempts if max_attempts is not None else settings.store_max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.store_backoff_base
        self._sleep = sleep

    def call_store(self, fn):
        return call_with_retry(
            fn,
            retry_on=(TransientStoreError,),
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            sleep=self._sleep,
        )

    def resolve(self, listing: EnrichedListing) -> ResolutionResult:
        for attempt in range(2):
            by_url = self.call_store(lambda: self.store.find_by_url(listing.source_url))
            by_vin = self.call_store(lambda: self.store.find_by_vin(listing.vin)) if listing.vin else None
            decision = decide(listing, by_url, by_vin)
            try:
                return self._apply(decision)
            except ListingConflictError as exc:
                if attempt == 0:
                    logger.info("conflict writing %s, re-resolving: %s", listing.source_url, exc)
                    continue
                raise ResolutionConflictError(f"persistent conflict for {listing.source_url}") from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _apply(self, decision: ResolutionDecision) -> ResolutionResult:
        if decision.resolution is Resolution.NEW:
            listing_id = self.call_store(lambda: self.store.upsert_by_url(decision.values))
            return ResolutionResult(decision.resolution, listing_id, True, decision.adopt_options, notes=decision.notes)

        target_id = decision.target_id
        if decision.delete_id is not None:
            self.call_store(lambda: self.store.merge_and_delete(target_id, decision.values, decision.delete_id))
        elif decision.values:
            self.call_store(lambda: self.store.update_by_id(target_id, decision.values))
        if "vin-held-elsewhere" in decision.notes:
            logger.warning("listing %s keeps its VIN unset, VIN already belongs to another sale", target_id)
        return ResolutionResult(
            decision.resolution,
            target_id,
            bool(decision.values) or decision.delete_id is not None,
            decision.adopt_options,
            merged_away_id=decision.delete_id,
            notes=decision.notes,
        )
