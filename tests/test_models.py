from __future__ import annotations

from license_audit.models import (
    DIRECT,
    ClassifiedAssignment,
    DirectoryUser,
    Group,
    GroupSource,
    LicenseAssignmentRecord,
)
from tests.utils import E5, EMS, SALES, state, user_payload


def test_graph_error_none_string_means_no_error() -> None:
    record = LicenseAssignmentRecord.from_dict(state(E5))

    assert record.error is None
    assert record.assigned_by_group is None
    assert record.state == "active"
    assert record.is_effective


def test_record_with_error_is_not_effective() -> None:
    record = LicenseAssignmentRecord.from_dict(state(E5, group=SALES, error="MutuallyExclusiveViolation"))

    assert record.error == "MutuallyExclusiveViolation"
    assert record.assigned_by_group == SALES
    assert not record.is_effective


def test_directory_user_parses_license_states() -> None:
    user = DirectoryUser.from_dict(
        user_payload("adele@contoso.com", state(E5), state(EMS, status="Error", error="CountViolation"))
    )

    assert user.upn == "adele@contoso.com"
    assert [record.sku_id for record in user.assignments] == [E5, EMS]
    assert [record.is_effective for record in user.assignments] == [True, False]


def test_dynamic_group_detection() -> None:
    assert Group.from_dict({"id": "g", "displayName": "All", "groupTypes": ["DynamicMembership"]}).is_dynamic
    assert not Group.from_dict({"id": "g", "displayName": "Static", "groupTypes": ["Unified"]}).is_dynamic


def test_assignment_source_labels() -> None:
    direct = ClassifiedAssignment(sku_name="E5", sku_id=E5, source=DIRECT)
    grouped = ClassifiedAssignment(sku_name="E5", sku_id=E5, source=GroupSource(SALES, "Sales Team"))

    assert (direct.assignment_type, direct.source.label) == ("Direct", "Direct")
    assert (grouped.assignment_type, grouped.source.label) == ("Group", "Group: Sales Team")
    assert grouped.is_group and not direct.is_group
