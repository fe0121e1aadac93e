"""Per-user and cross-user rollups of classified license assignments."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .models import (
    ClassifiedAssignment,
    GroupSource,
    GroupUsageSummary,
    SkuCombination,
    UserLicenseSummary,
)

UserAssignments = Tuple[str, Sequence[ClassifiedAssignment]]


def percentage(part: int, total: int, digits: int = 2) -> float:
    if total <= 0:
        return 0.0
    return round(part * 100.0 / total, digits)


def percentages(counts: Mapping[str, int], total: int, digits: int = 2) -> Dict[str, float]:
    return {key: percentage(value, total, digits) for key, value in counts.items()}


def summarize_user(
    upn: str,
    display_name: str,
    classified: Sequence[ClassifiedAssignment],
    delimiter: str = "; ",
) -> UserLicenseSummary:
    group_count = sum(1 for assignment in classified if assignment.is_group)
    return UserLicenseSummary(
        upn=upn,
        display_name=display_name,
        total_count=len(classified),
        direct_count=len(classified) - group_count,
        group_count=group_count,
        summary_text=delimiter.join(
            f"{assignment.sku_name} [{assignment.source.label}]" for assignment in classified
        ),
    )


def summarize_failure(upn: str, message: str, display_name: str = "") -> UserLicenseSummary:
    return UserLicenseSummary(upn=upn, display_name=display_name, error=message or "Unknown error")


def group_usage(pairs: Iterable[UserAssignments]) -> List[GroupUsageSummary]:
    """Invert per-user assignments into per-group user lists.

    Sorted by distinct user count descending, then group name ascending.
    """

    members: Dict[str, List[str]] = {}
    for upn, classified in pairs:
        for assignment in classified:
            if not isinstance(assignment.source, GroupSource):
                continue
            users = members.setdefault(assignment.source.group_name, [])
            if upn not in users:
                users.append(upn)

    summaries = [
        GroupUsageSummary(group_name=name, user_count=len(users), member_upns=users)
        for name, users in members.items()
    ]
    summaries.sort(key=lambda summary: (-summary.user_count, summary.group_name))
    return summaries


def sku_distribution(pairs: Iterable[UserAssignments]) -> List[Tuple[str, int]]:
    """Number of distinct users holding each SKU name, most common first."""

    counter: Counter[str] = Counter()
    for _, classified in pairs:
        counter.update({assignment.sku_name for assignment in classified})
    return sorted(counter.items(), key=lambda item: (-item[1], item[0]))


def classify_sku_combination(sku_a: str, sku_b: str, held_skus: Iterable[str]) -> SkuCombination:
    held = {sku.lower() for sku in held_skus}
    has_a = sku_a.lower() in held
    has_b = sku_b.lower() in held
    if has_a and has_b:
        return SkuCombination.BOTH
    if has_a:
        return SkuCombination.ONLY_A
    if has_b:
        return SkuCombination.ONLY_B
    return SkuCombination.NEITHER


@dataclass
class CombinationBreakdown:
    """Four-way partition of the users processed successfully.

    ``failed`` holds the users that could not be processed. Shares are taken
    over every processed user, so the buckets plus the failures add to 100.
    """

    total: int = 0
    members: Dict[SkuCombination, List[str]] = field(
        default_factory=lambda: {combination: [] for combination in SkuCombination}
    )
    failed: List[str] = field(default_factory=list)

    @property
    def counts(self) -> Dict[SkuCombination, int]:
        return {combination: len(users) for combination, users in self.members.items()}

    @property
    def processed(self) -> int:
        return self.total + len(self.failed)

    @property
    def failed_share(self) -> float:
        return percentage(len(self.failed), self.processed)

    def share(self, combination: SkuCombination) -> float:
        return percentage(len(self.members[combination]), self.processed)


def combination_breakdown(
    sku_a: str,
    sku_b: str,
    held_by_user: Mapping[str, Set[str]],
    failed: Iterable[str] = (),
) -> CombinationBreakdown:
    breakdown = CombinationBreakdown(total=len(held_by_user), failed=list(failed))
    for user, held in held_by_user.items():
        breakdown.members[classify_sku_combination(sku_a, sku_b, held)].append(user)
    return breakdown


@dataclass
class SourceTotals:
    users: int = 0
    failed_users: int = 0
    assignments: int = 0
    direct: int = 0
    group: int = 0

    @property
    def direct_share(self) -> float:
        return percentage(self.direct, self.assignments)

    @property
    def group_share(self) -> float:
        return percentage(self.group, self.assignments)


def source_totals(summaries: Iterable[UserLicenseSummary]) -> SourceTotals:
    totals = SourceTotals()
    for summary in summaries:
        totals.users += 1
        if summary.error:
            totals.failed_users += 1
        totals.assignments += summary.total_count
        totals.direct += summary.direct_count
        totals.group += summary.group_count
    return totals


__all__ = [
    "CombinationBreakdown",
    "SourceTotals",
    "classify_sku_combination",
    "combination_breakdown",
    "group_usage",
    "percentage",
    "percentages",
    "sku_distribution",
    "source_totals",
    "summarize_failure",
    "summarize_user",
]
