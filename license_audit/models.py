"""Data models for license assignments, groups and report summaries."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

ACTIVE_STATE = "active"


def _clean(value: Any) -> str:
    return str(value or "").strip()


def _optional(value: Any) -> Optional[str]:
    cleaned = _clean(value)
    if not cleaned or cleaned.lower() == "none":
        return None
    return cleaned


@dataclass(frozen=True)
class LicenseAssignmentRecord:
    """One entry of a user's ``licenseAssignmentStates`` as returned by Graph."""

    sku_id: str
    state: str = ACTIVE_STATE
    error: Optional[str] = None
    assigned_by_group: Optional[str] = None
    disabled_plans: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicenseAssignmentRecord":
        plans = data.get("disabledPlans") or data.get("disabled_plans") or []
        return cls(
            sku_id=_clean(data.get("skuId") or data.get("sku_id")),
            state=_clean(data.get("state") or ACTIVE_STATE).lower(),
            error=_optional(data.get("error")),
            assigned_by_group=_optional(
                data.get("assignedByGroup") or data.get("assigned_by_group")
            ),
            disabled_plans=tuple(str(plan) for plan in plans),
        )

    @property
    def is_effective(self) -> bool:
        return self.state == ACTIVE_STATE and self.error is None


@dataclass(frozen=True)
class Sku:
    id: str
    part_number: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sku":
        return cls(
            id=_clean(data.get("skuId") or data.get("id")),
            part_number=_clean(data.get("skuPartNumber") or data.get("part_number")),
        )


@dataclass(frozen=True)
class Group:
    id: str
    display_name: str
    is_dynamic: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        group_types = data.get("groupTypes") or []
        dynamic = data.get("is_dynamic")
        if dynamic is None:
            dynamic = "DynamicMembership" in group_types
        return cls(
            id=_clean(data.get("id")),
            display_name=_clean(data.get("displayName") or data.get("display_name")),
            is_dynamic=bool(dynamic),
        )


@dataclass
class DirectoryUser:
    """A user together with their raw license assignment states."""

    id: str
    display_name: str
    upn: str
    assignments: List[LicenseAssignmentRecord] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryUser":
        states = data.get("licenseAssignmentStates") or data.get("assignments") or []
        return cls(
            id=_clean(data.get("id")),
            display_name=_clean(data.get("displayName") or data.get("display_name")),
            upn=_clean(data.get("userPrincipalName") or data.get("upn")),
            assignments=[LicenseAssignmentRecord.from_dict(entry) for entry in states],
        )


@dataclass(frozen=True)
class DirectSource:
    @property
    def label(self) -> str:
        return "Direct"


@dataclass(frozen=True)
class GroupSource:
    group_id: str
    group_name: str

    @property
    def label(self) -> str:
        return f"Group: {self.group_name}"


AssignmentSource = Union[DirectSource, GroupSource]
DIRECT = DirectSource()


@dataclass(frozen=True)
class ClassifiedAssignment:
    sku_name: str
    sku_id: str
    source: AssignmentSource
    state: str = ACTIVE_STATE
    error: Optional[str] = None
    disabled_plans: Tuple[str, ...] = ()

    @property
    def is_group(self) -> bool:
        return isinstance(self.source, GroupSource)

    @property
    def assignment_type(self) -> str:
        return "Group" if self.is_group else "Direct"


@dataclass
class UserLicenseSummary:
    """Per-user rollup. ``error`` marks a user that could not be processed."""

    upn: str
    display_name: str = ""
    total_count: int = 0
    direct_count: int = 0
    group_count: int = 0
    summary_text: str = ""
    error: Optional[str] = None

    @property
    def status(self) -> str:
        return "Error" if self.error else "OK"


@dataclass
class GroupUsageSummary:
    group_name: str
    user_count: int
    member_upns: List[str] = field(default_factory=list)


class SkuCombination(Enum):
    ONLY_A = "only_a"
    ONLY_B = "only_b"
    BOTH = "both"
    NEITHER = "neither"


def unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = _clean(value)
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


__all__ = [
    "ACTIVE_STATE",
    "AssignmentSource",
    "ClassifiedAssignment",
    "DIRECT",
    "DirectSource",
    "DirectoryUser",
    "Group",
    "GroupSource",
    "GroupUsageSummary",
    "LicenseAssignmentRecord",
    "Sku",
    "SkuCombination",
    "UserLicenseSummary",
    "unique_preserve",
]
