"""Fake directory and payload helpers shared by the tests."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from license_audit.graph_client import GraphNotFoundError, GraphRequestError

E5 = "e5e5e5e5-0000-4000-8000-000000000001"
EMS = "e3e3e3e3-0000-4000-8000-000000000002"
VISIO = "71717171-0000-4000-8000-000000000003"

SALES = "g1000000-0000-4000-8000-000000000001"
FINANCE = "g2000000-0000-4000-8000-000000000002"
SUPPORT = "g3000000-0000-4000-8000-000000000003"


def state(
    sku: str,
    group: Optional[str] = None,
    status: str = "Active",
    error: str = "None",
    disabled: Iterable[str] = (),
) -> Dict[str, Any]:
    return {
        "skuId": sku,
        "state": status,
        "error": error,
        "assignedByGroup": group,
        "disabledPlans": list(disabled),
    }


def user_payload(upn: str, *states: Dict[str, Any], user_id: Optional[str] = None, name: str = "") -> Dict[str, Any]:
    return {
        "id": user_id or f"id-{upn}",
        "displayName": name or upn.split("@")[0].title(),
        "userPrincipalName": upn,
        "licenseAssignmentStates": list(states),
    }


class FakeDirectory:
    """In-memory stand-in for the Graph client that records group lookups."""

    def __init__(
        self,
        skus: Optional[Dict[str, str]] = None,
        users: Iterable[Dict[str, Any]] = (),
        groups: Optional[Dict[str, str]] = None,
        members: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        extensions: Optional[Dict[str, str]] = None,
        denied_users: Iterable[str] = (),
        failing_extensions: Iterable[str] = (),
    ) -> None:
        self.skus = skus or {}
        self.users: Dict[str, Dict[str, Any]] = {}
        for user in users:
            self.users[user["userPrincipalName"].lower()] = user
            self.users[user["id"].lower()] = user
        self.groups = groups or {}
        self.members = members or {}
        self.extensions = extensions or {}
        self.denied_users = set(denied_users)
        self.failing_extensions = set(failing_extensions)
        self.group_calls: List[str] = []
        self.extension_calls: List[str] = []

    def list_skus(self) -> List[Dict[str, Any]]:
        return [{"skuId": sku, "skuPartNumber": name} for sku, name in self.skus.items()]

    def get_user(self, identifier: str) -> Dict[str, Any]:
        if identifier in self.denied_users:
            raise GraphRequestError(403, "Authorization_RequestDenied", "Insufficient privileges.")
        try:
            return self.users[identifier.lower()]
        except KeyError:
            raise GraphNotFoundError(404, "Request_ResourceNotFound", f"User '{identifier}' does not exist.")

    def get_group(self, group_id: str) -> Dict[str, Any]:
        self.group_calls.append(group_id)
        if group_id not in self.groups:
            raise GraphNotFoundError(404, "Request_ResourceNotFound", f"Group '{group_id}' does not exist.")
        return {"id": group_id, "displayName": self.groups[group_id], "groupTypes": []}

    def list_group_members(self, group_id: str) -> List[Dict[str, Any]]:
        if group_id not in self.members:
            raise GraphNotFoundError(404, "Request_ResourceNotFound", f"Group '{group_id}' does not exist.")
        return [dict(member) for member in self.members[group_id]]

    def get_user_extension_attribute(self, user_id: str, name: str) -> Optional[str]:
        self.extension_calls.append(user_id)
        if user_id in self.failing_extensions:
            raise GraphRequestError(503, "ServiceUnavailable", "Try again later.")
        return self.extensions.get(user_id)


def member(user_id: str, upn: str = "") -> Dict[str, Any]:
    return {"id": user_id, "userPrincipalName": upn or f"{user_id}@contoso.com", "displayName": user_id}


def write_yaml(path: Path, payload: Dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
    return path


def mock_directory_payload() -> Dict[str, Any]:
    return {
        "skus": [
            {"skuId": E5, "skuPartNumber": "SPE_E5"},
            {"skuId": EMS, "skuPartNumber": "EMSPREMIUM"},
            {"skuId": VISIO, "skuPartNumber": "VISIOCLIENT"},
        ],
        "groups": [
            {"id": SALES, "displayName": "Sales Team", "groupTypes": [], "members": ["u1", "u2"]},
            {"id": FINANCE, "displayName": "Finance", "groupTypes": ["DynamicMembership"], "members": ["u1", "u3"]},
            {"id": SUPPORT, "displayName": "Support", "groupTypes": [], "members": ["u1"]},
        ],
        "users": [
            {
                "id": "u1",
                "displayName": "Adele Vance",
                "userPrincipalName": "adele@contoso.com",
                "extensions": {"extensionAttribute1": "Finance"},
                "licenseAssignmentStates": [state(E5), state(EMS, group=SALES)],
            },
            {
                "id": "u2",
                "displayName": "Alex Wilber",
                "userPrincipalName": "alex@contoso.com",
                "licenseAssignmentStates": [
                    state(EMS, group=SALES, status="Error", error="LicenseTypeNotEnoughSeats")
                ],
            },
            {
                "id": "u3",
                "displayName": "Megan Bowen",
                "userPrincipalName": "megan@contoso.com",
                "extensions": {"extensionAttribute1": "Sales"},
                "licenseAssignmentStates": [state(EMS, group=FINANCE), state(VISIO)],
            },
        ],
    }
