"""Direct-vs-group classification of a user's license assignments."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import (
    DIRECT,
    ClassifiedAssignment,
    Group,
    GroupSource,
    LicenseAssignmentRecord,
    Sku,
)


logger = logging.getLogger(__name__)

UNKNOWN_SKU = "Unknown SKU: {}"
UNKNOWN_GROUP = "Unknown Group: {}"


class SkuCatalog:
    """Read-only SKU id to part number mapping, built once per run."""

    def __init__(self, skus: Iterable[Sku]) -> None:
        self._names: Dict[str, str] = {}
        for sku in skus:
            if sku.id:
                self._names[sku.id.lower()] = sku.part_number or sku.id

    @classmethod
    def from_payload(cls, payload: Iterable[Dict[str, Any]]) -> "SkuCatalog":
        return cls(Sku.from_dict(entry) for entry in payload)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, sku_id: object) -> bool:
        return isinstance(sku_id, str) and sku_id.lower() in self._names

    def name_for(self, sku_id: str) -> str:
        return self._names.get((sku_id or "").lower(), UNKNOWN_SKU.format(sku_id))

    def find(self, value: str) -> Optional[str]:
        """Resolve a SKU id or part number (case-insensitive) to the SKU id."""

        lowered = (value or "").strip().lower()
        if not lowered:
            return None
        if lowered in self._names:
            return lowered
        for sku_id, part_number in self._names.items():
            if part_number.lower() == lowered:
                return sku_id
        return None

    def items(self) -> List[tuple[str, str]]:
        return sorted(self._names.items(), key=lambda item: item[1].lower())


class GroupNameCache:
    """Lookup-or-compute memo of group id to display name.

    ``fetch`` is called at most once per group id. A failed lookup is stored as
    a placeholder so later records naming the same group do not call again.
    """

    def __init__(self, fetch: Callable[[str], Dict[str, Any]]) -> None:
        self._fetch = fetch
        self._names: Dict[str, str] = {}
        self._failed: set[str] = set()
        self._lock = threading.Lock()
        self.lookups = 0

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._names

    def __len__(self) -> int:
        return len(self._names)

    def failed(self, group_id: str) -> bool:
        return group_id in self._failed

    def resolve(self, group_id: str) -> str:
        with self._lock:
            cached = self._names.get(group_id)
            if cached is not None:
                return cached

            self.lookups += 1
            try:
                group = Group.from_dict(self._fetch(group_id))
                name = group.display_name or UNKNOWN_GROUP.format(group_id)
            except Exception as exc:
                logger.warning("Unable to resolve group %s: %s", group_id, exc)
                name = UNKNOWN_GROUP.format(group_id)
                self._failed.add(group_id)
            self._names[group_id] = name
            return name


def classify_assignments(
    records: Iterable[LicenseAssignmentRecord],
    target_skus: Iterable[str],
    catalog: SkuCatalog,
    group_cache: GroupNameCache,
    effective_only: bool = True,
) -> List[ClassifiedAssignment]:
    """Classify ``records`` as direct or group-based, keeping input order.

    An empty ``target_skus`` includes every SKU. With ``effective_only`` only
    active, error-free records are kept; otherwise every record is returned with
    its state and error.
    """

    targets = {sku.lower() for sku in target_skus if sku}
    classified: List[ClassifiedAssignment] = []
    for record in records:
        if effective_only and not record.is_effective:
            continue
        if targets and record.sku_id.lower() not in targets:
            continue

        if record.assigned_by_group:
            source = GroupSource(
                group_id=record.assigned_by_group,
                group_name=group_cache.resolve(record.assigned_by_group),
            )
        else:
            source = DIRECT

        classified.append(
            ClassifiedAssignment(
                sku_name=catalog.name_for(record.sku_id),
                sku_id=record.sku_id,
                source=source,
                state=record.state,
                error=record.error,
                disabled_plans=record.disabled_plans,
            )
        )
    return classified


__all__ = [
    "GroupNameCache",
    "SkuCatalog",
    "UNKNOWN_GROUP",
    "UNKNOWN_SKU",
    "classify_assignments",
]
