"""Fetch-classify-aggregate pipeline and CSV row builders for the license reports."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from .aggregator import (
    CombinationBreakdown,
    SourceTotals,
    combination_breakdown,
    group_usage,
    percentage,
    sku_distribution,
    summarize_failure,
    summarize_user,
)
from .classifier import GroupNameCache, SkuCatalog, classify_assignments
from .models import ClassifiedAssignment, DirectoryUser, GroupSource, SkuCombination, UserLicenseSummary


logger = logging.getLogger(__name__)

USER_SUMMARY_FIELDS = (
    "UserPrincipalName",
    "DisplayName",
    "Status",
    "TotalLicenses",
    "DirectLicenses",
    "GroupLicenses",
    "Licenses",
    "Error",
)
DETAIL_FIELDS = (
    "UserPrincipalName",
    "DisplayName",
    "SkuName",
    "SkuId",
    "AssignmentType",
    "GroupId",
    "GroupName",
    "State",
    "Error",
    "DisabledPlans",
)
GROUP_USAGE_FIELDS = ("GroupName", "UserCount", "Percentage", "Members")
SKU_DISTRIBUTION_FIELDS = ("SkuName", "UserCount", "Percentage")
COMPARISON_FIELDS = ("UserPrincipalName", "DisplayName", "Status", "HasA", "HasB", "Combination", "Error")
COMPARISON_SUMMARY_FIELDS = ("Combination", "UserCount", "Percentage")
SOURCE_TOTAL_FIELDS = ("Metric", "Value")

COMBINATION_LABELS = {
    SkuCombination.ONLY_A: "Only {a}",
    SkuCombination.ONLY_B: "Only {b}",
    SkuCombination.BOTH: "Both",
    SkuCombination.NEITHER: "Neither",
}
ERRORS_LABEL = "Errors"


class SetupError(RuntimeError):
    """Raised when a run cannot start, e.g. a required SKU is missing from the tenant."""


@dataclass
class UserResult:
    """Outcome of processing one input identifier."""

    identifier: str
    user: Optional[DirectoryUser] = None
    classified: List[ClassifiedAssignment] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def upn(self) -> str:
        if self.user and self.user.upn:
            return self.user.upn
        return self.identifier

    @property
    def display_name(self) -> str:
        return self.user.display_name if self.user else ""

    def summary(self, delimiter: str = "; ") -> UserLicenseSummary:
        if self.error:
            return summarize_failure(self.upn, self.error, self.display_name)
        return summarize_user(self.upn, self.display_name, self.classified, delimiter)


def load_catalog(directory: Any) -> SkuCatalog:
    catalog = SkuCatalog.from_payload(directory.list_skus())
    logger.info("Loaded %s subscribed SKUs", len(catalog))
    return catalog


def resolve_required_sku(catalog: SkuCatalog, value: str) -> str:
    sku_id = catalog.find(value)
    if not sku_id:
        raise SetupError(f"SKU '{value}' was not found in the tenant.")
    return sku_id


def resolve_target_skus(catalog: SkuCatalog, values: Iterable[str]) -> List[str]:
    return [resolve_required_sku(catalog, value) for value in values if value]


def collect_user_licenses(
    directory: Any,
    identifiers: Iterable[str],
    catalog: SkuCatalog,
    group_cache: GroupNameCache,
    target_skus: Sequence[str] = (),
    effective_only: bool = True,
    progress: Optional[Callable[[str], None]] = None,
) -> Iterator[UserResult]:
    """Yield one :class:`UserResult` per user; a failing user never stops the batch.

    Identifiers that resolve to a user already seen (object id next to UPN, a
    case variant of a UPN) are skipped so each person is reported once.
    """

    seen: Dict[str, str] = {}
    for identifier in identifiers:
        try:
            user = DirectoryUser.from_dict(directory.get_user(identifier))
            key = (user.id or user.upn).lower()
            if key in seen:
                logger.info("Skipping %s: same user as %s", identifier, seen[key])
                if progress:
                    progress(identifier)
                continue
            seen[key] = identifier
            classified = classify_assignments(
                user.assignments, target_skus, catalog, group_cache, effective_only
            )
        except Exception as exc:
            logger.warning("Failed to process %s: %s", identifier, exc)
            result = UserResult(identifier=identifier, error=str(exc) or exc.__class__.__name__)
        else:
            result = UserResult(identifier=identifier, user=user, classified=classified)
        if progress:
            progress(identifier)
        yield result


# ---------------------------------------------------------------------- #
# Row builders                                                           #
# ---------------------------------------------------------------------- #
def user_summary_rows(summaries: Iterable[UserLicenseSummary]) -> List[Dict[str, Any]]:
    return [
        {
            "UserPrincipalName": summary.upn,
            "DisplayName": summary.display_name,
            "Status": summary.status,
            "TotalLicenses": summary.total_count,
            "DirectLicenses": summary.direct_count,
            "GroupLicenses": summary.group_count,
            "Licenses": summary.summary_text,
            "Error": summary.error or "",
        }
        for summary in summaries
    ]


def assignment_detail_rows(results: Iterable[UserResult]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for result in results:
        for assignment in result.classified:
            source = assignment.source
            rows.append(
                {
                    "UserPrincipalName": result.upn,
                    "DisplayName": result.display_name,
                    "SkuName": assignment.sku_name,
                    "SkuId": assignment.sku_id,
                    "AssignmentType": assignment.assignment_type,
                    "GroupId": source.group_id if isinstance(source, GroupSource) else "",
                    "GroupName": source.group_name if isinstance(source, GroupSource) else "",
                    "State": assignment.state,
                    "Error": assignment.error or "",
                    "DisabledPlans": ";".join(assignment.disabled_plans),
                }
            )
    return rows


def group_usage_rows(results: Sequence[UserResult], delimiter: str = "; ") -> List[Dict[str, Any]]:
    total = len(results)
    pairs = [(result.upn, result.classified) for result in results if not result.error]
    return [
        {
            "GroupName": summary.group_name,
            "UserCount": summary.user_count,
            "Percentage": percentage(summary.user_count, total),
            "Members": delimiter.join(summary.member_upns),
        }
        for summary in group_usage(pairs)
    ]


def sku_distribution_rows(results: Sequence[UserResult]) -> List[Dict[str, Any]]:
    total = len(results)
    pairs = [(result.upn, result.classified) for result in results if not result.error]
    return [
        {"SkuName": name, "UserCount": count, "Percentage": percentage(count, total)}
        for name, count in sku_distribution(pairs)
    ]


def source_total_rows(totals: SourceTotals) -> List[Dict[str, Any]]:
    return [
        {"Metric": "Users processed", "Value": totals.users},
        {"Metric": "Users with errors", "Value": totals.failed_users},
        {"Metric": "Total assignments", "Value": totals.assignments},
        {"Metric": "Direct assignments", "Value": totals.direct},
        {"Metric": "Group assignments", "Value": totals.group},
        {"Metric": "Direct share (%)", "Value": totals.direct_share},
        {"Metric": "Group share (%)", "Value": totals.group_share},
    ]


def combination_label(combination: SkuCombination, name_a: str, name_b: str) -> str:
    return COMBINATION_LABELS[combination].format(a=name_a, b=name_b)


def comparison_rows(
    results: Iterable[UserResult],
    sku_a: str,
    sku_b: str,
    catalog: SkuCatalog,
    breakdown: CombinationBreakdown,
) -> List[Dict[str, Any]]:
    """Per-user rows; error rows are listed but carry no combination."""

    name_a, name_b = catalog.name_for(sku_a), catalog.name_for(sku_b)
    bucket_of: Dict[str, SkuCombination] = {}
    for combination, users in breakdown.members.items():
        for user in users:
            bucket_of[user] = combination

    rows: List[Dict[str, Any]] = []
    for result in results:
        combination = bucket_of.get(result.upn)
        rows.append(
            {
                "UserPrincipalName": result.upn,
                "DisplayName": result.display_name,
                "Status": "Error" if result.error else "OK",
                "HasA": combination in (SkuCombination.ONLY_A, SkuCombination.BOTH),
                "HasB": combination in (SkuCombination.ONLY_B, SkuCombination.BOTH),
                "Combination": combination_label(combination, name_a, name_b) if combination else "",
                "Error": result.error or "",
            }
        )
    return rows


def comparison_summary_rows(
    breakdown: CombinationBreakdown, name_a: str, name_b: str
) -> List[Dict[str, Any]]:
    """One row per combination plus an ``Errors`` row; counts add to the users processed."""

    rows = [
        {
            "Combination": combination_label(combination, name_a, name_b),
            "UserCount": count,
            "Percentage": breakdown.share(combination),
        }
        for combination, count in breakdown.counts.items()
    ]
    rows.append(
        {
            "Combination": ERRORS_LABEL,
            "UserCount": len(breakdown.failed),
            "Percentage": breakdown.failed_share,
        }
    )
    return rows


def comparison_breakdown(results: Sequence[UserResult], sku_a: str, sku_b: str) -> CombinationBreakdown:
    return combination_breakdown(
        sku_a,
        sku_b,
        held_skus_by_user(results),
        failed=[result.upn for result in results if result.error],
    )


def held_skus_by_user(results: Iterable[UserResult]) -> Dict[str, set[str]]:
    """SKU ids held per successfully processed user, from the classified assignments."""

    return {
        result.upn: {assignment.sku_id for assignment in result.classified}
        for result in results
        if not result.error
    }


__all__ = [
    "COMPARISON_FIELDS",
    "COMPARISON_SUMMARY_FIELDS",
    "DETAIL_FIELDS",
    "GROUP_USAGE_FIELDS",
    "SKU_DISTRIBUTION_FIELDS",
    "SOURCE_TOTAL_FIELDS",
    "ERRORS_LABEL",
    "SetupError",
    "USER_SUMMARY_FIELDS",
    "UserResult",
    "assignment_detail_rows",
    "collect_user_licenses",
    "combination_label",
    "comparison_breakdown",
    "comparison_rows",
    "comparison_summary_rows",
    "group_usage_rows",
    "held_skus_by_user",
    "load_catalog",
    "resolve_required_sku",
    "resolve_target_skus",
    "sku_distribution_rows",
    "source_total_rows",
    "user_summary_rows",
]
