"""Ordered upgrades of the stored root document.

Each step is a pure function taking a schema-N document and returning a new
schema-N+1 document. ``migrate`` applies the steps in order.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List

from .entities import SCHEMA_VERSION
from .errors import UnsupportedSchemaError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]

LEGACY_EPOCH = "1970-01-01T00:00:00+00:00"


def coerce_version(raw: Any) -> int:
    """Map stored version markers (``None``, ``2``, ``"1.0.0"``) to an integer schema version."""
    if raw is None or raw == "":
        return 1
    if isinstance(raw, bool):
        raise UnsupportedSchemaError(f"Unreadable schema version {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        major = raw.strip().split(".", 1)[0]
        if major.isdigit():
            return int(major)
    raise UnsupportedSchemaError(f"Unreadable schema version {raw!r}")


def _v1_to_v2(document: Document) -> Document:
    upgraded = copy.deepcopy(document)
    fallback_created = upgraded.get("lastUpdated") or LEGACY_EPOCH
    for task in upgraded.get("tasks") or []:
        task.setdefault("createdAt", fallback_created)
    for entry in upgraded.get("timeEntries") or []:
        entry["isManual"] = bool(entry.pop("isManuallyAdjusted", entry.get("isManual", False)))
        entry["note"] = entry.pop("adjustmentNote", entry.get("note", "")) or ""
        entry["adjustedAt"] = entry.pop("adjustmentTimestamp", entry.get("adjustedAt"))
        if not entry.get("date") and entry.get("startTime"):
            entry["date"] = str(entry["startTime"])[:10]
    upgraded["version"] = 2
    return upgraded


def _v2_to_v3(document: Document) -> Document:
    upgraded = copy.deepcopy(document)
    for task in upgraded.get("tasks") or []:
        task["isArchived"] = bool(task.pop("isDeleted", task.get("isArchived", False)))
    for meal_break in upgraded.get("mealBreaks") or []:
        meal_break.setdefault("isTruncated", False)
    if not upgraded.get("activityCounters"):
        stamp = upgraded.get("lastUpdated") or LEGACY_EPOCH
        counters: List[Document] = []
        for work_day in upgraded.get("workDays") or []:
            for activity, count in (work_day.get("activityCounters") or {}).items():
                counters.append(
                    {
                        "date": work_day["date"],
                        "activityType": str(activity).strip().lower(),
                        "count": int(count),
                        "lastUpdated": stamp,
                    }
                )
        upgraded["activityCounters"] = counters
    upgraded["version"] = 3
    return upgraded


MIGRATIONS: Dict[int, Callable[[Document], Document]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate(document: Document) -> Document:
    version = coerce_version(document.get("version"))
    if version > SCHEMA_VERSION:
        raise UnsupportedSchemaError(
            f"Stored schema version {version} is newer than supported version {SCHEMA_VERSION}"
        )
    if version < 1:
        raise UnsupportedSchemaError(f"Stored schema version {version} is not a known schema")
    current = dict(document)
    current["version"] = version
    while version < SCHEMA_VERSION:
        step = MIGRATIONS[version]
        current = step(current)
        logger.info("Migrated stored state from schema %s to %s", version, current["version"])
        version = current["version"]
    return current
