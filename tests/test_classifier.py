from __future__ import annotations

from license_audit.aggregator import summarize_user
from license_audit.classifier import GroupNameCache, SkuCatalog, classify_assignments
from license_audit.models import DIRECT, GroupSource, LicenseAssignmentRecord, Sku
from tests.utils import EMS, E5, SALES, VISIO, FakeDirectory, state


def _records(*states):
    return [LicenseAssignmentRecord.from_dict(entry) for entry in states]


def _catalog():
    return SkuCatalog([Sku(E5, "Office E5"), Sku(EMS, "EM+S")])


def test_direct_and_group_assignments_are_classified_in_order() -> None:
    directory = FakeDirectory(groups={"G1": "Sales Team"})
    catalog = SkuCatalog([Sku("E5", "Office E5"), Sku("EMS", "EM+S")])
    cache = GroupNameCache(directory.get_group)

    classified = classify_assignments(
        _records(state("E5"), state("EMS", group="G1")), set(), catalog, cache
    )

    assert [item.sku_name for item in classified] == ["Office E5", "EM+S"]
    assert classified[0].source == DIRECT
    assert classified[1].source == GroupSource(group_id="G1", group_name="Sales Team")

    summary = summarize_user("adele@contoso.com", "Adele", classified)
    assert (summary.direct_count, summary.group_count, summary.total_count) == (1, 1, 2)


def test_effective_filter_drops_errored_records_but_all_states_keeps_them() -> None:
    records = _records(state(E5), state(EMS, error="LicenseTypeNotEnoughSeats"))
    cache = GroupNameCache(FakeDirectory().get_group)

    effective = classify_assignments(records, (), _catalog(), cache, effective_only=True)
    everything = classify_assignments(records, (), _catalog(), cache, effective_only=False)

    assert [item.sku_id for item in effective] == [E5]
    assert [item.sku_id for item in everything] == [E5, EMS]
    assert everything[1].error == "LicenseTypeNotEnoughSeats"
    assert everything[1].state == "active"


def test_pending_state_is_not_effective() -> None:
    records = _records(state(E5, status="PendingActivation"))
    cache = GroupNameCache(FakeDirectory().get_group)

    assert classify_assignments(records, (), _catalog(), cache) == []


def test_unknown_sku_gets_placeholder_name() -> None:
    cache = GroupNameCache(FakeDirectory().get_group)

    classified = classify_assignments(_records(state(VISIO)), (), _catalog(), cache)

    assert classified[0].sku_name == f"Unknown SKU: {VISIO}"


def test_target_skus_limit_output_and_empty_target_includes_all() -> None:
    records = _records(state(VISIO), state(E5), state(EMS))
    cache = GroupNameCache(FakeDirectory().get_group)

    limited = classify_assignments(records, {EMS, E5}, _catalog(), cache)
    unlimited = classify_assignments(records, set(), _catalog(), cache)

    assert [item.sku_id for item in limited] == [E5, EMS]
    assert [item.sku_id for item in unlimited] == [VISIO, E5, EMS]


def test_group_lookup_happens_once_per_group() -> None:
    directory = FakeDirectory(groups={SALES: "Sales Team"})
    cache = GroupNameCache(directory.get_group)
    records = _records(state(E5, group=SALES), state(EMS, group=SALES))

    classify_assignments(records, (), _catalog(), cache)
    classify_assignments(records, (), _catalog(), cache)

    assert directory.group_calls == [SALES]
    assert cache.lookups == 1


def test_failed_group_lookup_is_cached_as_placeholder() -> None:
    directory = FakeDirectory()
    cache = GroupNameCache(directory.get_group)
    records = _records(state(E5, group="missing"), state(EMS, group="missing"))

    classified = classify_assignments(records, (), _catalog(), cache)

    assert [item.source.group_name for item in classified] == ["Unknown Group: missing"] * 2
    assert directory.group_calls == ["missing"]
    assert cache.failed("missing")


def test_disabled_plans_are_copied_verbatim() -> None:
    cache = GroupNameCache(FakeDirectory().get_group)
    records = _records(state(E5, disabled=["plan-b", "plan-a"]))

    classified = classify_assignments(records, (), _catalog(), cache)

    assert classified[0].disabled_plans == ("plan-b", "plan-a")


def test_catalog_resolves_part_numbers_and_ids() -> None:
    catalog = SkuCatalog.from_payload([{"skuId": E5.upper(), "skuPartNumber": "SPE_E5"}])

    assert catalog.find("spe_e5") == E5
    assert catalog.find(E5) == E5
    assert catalog.find("VISIOCLIENT") is None
    assert catalog.name_for(E5) == "SPE_E5"
