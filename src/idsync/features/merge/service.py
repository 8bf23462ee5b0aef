from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from idsync.core.config import MergeConfig
from idsync.core.ids import canonical_json
from idsync.core.types import Record, ensure_utc


@dataclass(frozen=True)
class MergeResult:
    record: Record
    fields_updated: tuple[str, ...]


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def parse_time_point(value: Any) -> datetime | None:
    """
    ISO-8601 string, datetime, or epoch milliseconds -> aware UTC datetime.
    Anything else -> None.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def has_changes(before: Record, after: Record) -> bool:
    return canonical_json(before) != canonical_json(after)


def exceeds_depth(value: Any, limit: int) -> bool:
    """True if `value` nests maps/lists more than `limit` levels deep. Iterative."""
    stack: list[tuple[Any, int]] = [(value, 1)]
    while stack:
        item, depth = stack.pop()
        if isinstance(item, dict):
            children: Any = item.values()
        elif isinstance(item, list):
            children = item
        else:
            continue
        if depth > limit:
            return True
        stack.extend((child, depth + 1) for child in children)
    return False


class SessionMergeEngine:
    """
    Pure merge of an incoming session fragment into the persisted record.

    Per field present in `incoming`:
    - incoming empty            -> keep existing
    - existing empty            -> take incoming
    - freshness field           -> later time point wins (unparseable: keep existing)
    - list + list               -> existing order, then new unique incoming items
    - map + map                 -> recurse (bounded by max_depth)
    - anything else             -> keep existing

    Incoming fields nested deeper than `max_value_depth` are ignored.
    """

    def __init__(self, cfg: MergeConfig | None = None) -> None:
        self.cfg = cfg or MergeConfig()

    def merge(self, existing: Record | None, incoming: Record | None) -> Record:
        return self.merge_with_report(existing, incoming).record

    def merge_with_report(self, existing: Record | None, incoming: Record | None) -> MergeResult:
        updated: list[str] = []
        if incoming:
            limit = self.cfg.max_value_depth
            incoming = {k: v for k, v in incoming.items() if not exceeds_depth(v, limit)}
        record = self._merge_maps(existing, incoming, depth=1, updated=updated)
        return MergeResult(record=record, fields_updated=tuple(updated))

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _merge_maps(
        self,
        existing: Record | None,
        incoming: Record | None,
        *,
        depth: int,
        updated: list[str] | None,
    ) -> Record:
        if not incoming:
            return copy.deepcopy(existing) if existing else {}
        if not existing:
            if updated is not None:
                updated.extend(k for k, v in incoming.items() if not is_empty(v))
            return copy.deepcopy(incoming)

        merged: Record = copy.deepcopy(existing)
        for key, incoming_value in incoming.items():
            existing_value = existing.get(key)
            value = self._merge_field(key, existing_value, incoming_value, depth=depth)
            if value is existing_value:
                continue
            merged[key] = copy.deepcopy(value)
            if updated is not None:
                updated.append(key)
        return merged

    def _merge_field(self, key: str, existing: Any, incoming: Any, *, depth: int) -> Any:
        """Returns `existing` (same object) when the existing value stands."""
        if is_empty(incoming):
            return existing
        if is_empty(existing):
            return incoming

        if key in self.cfg.freshness_fields:
            existing_ts = parse_time_point(existing)
            incoming_ts = parse_time_point(incoming)
            if existing_ts is None or incoming_ts is None:
                return existing
            return incoming if incoming_ts > existing_ts else existing

        if isinstance(existing, list) and isinstance(incoming, list):
            # JSON equality: 1 and True are different items
            union = list(existing)
            seen = {canonical_json(item) for item in existing}
            for item in incoming:
                item_key = canonical_json(item)
                if item_key not in seen:
                    seen.add(item_key)
                    union.append(item)
            return union if len(union) > len(existing) else existing

        if isinstance(existing, dict) and isinstance(incoming, dict):
            if depth >= self.cfg.max_depth:
                return existing
            nested = self._merge_maps(existing, incoming, depth=depth + 1, updated=None)
            return nested if has_changes(existing, nested) else existing

        return existing
