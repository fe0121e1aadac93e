from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from license_audit import graph_client
from license_audit.config import GraphConfig
from license_audit.graph_client import (
    GraphClient,
    GraphConfigurationError,
    GraphNotFoundError,
    GraphRequestError,
)
from tests.utils import SALES, mock_directory_payload, write_yaml


class FakeApp:
    def __init__(self, client_id: str, client_credential: str, authority: str) -> None:
        self.authority = authority

    def acquire_token_silent(self, scopes, account=None):
        return None

    def acquire_token_for_client(self, scopes):
        return {"access_token": "token"}


class FakeResponse:
    def __init__(self, status_code: int, payload: Optional[Dict[str, Any]] = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Dict[str, Any]:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses: List[FakeResponse]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, timeout=None, headers=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, **kwargs})
        return self.responses.pop(0)

    def close(self) -> None:
        pass


@pytest.fixture
def http_client(monkeypatch):
    def _build(*responses: FakeResponse):
        session = FakeSession(list(responses))
        monkeypatch.setattr(graph_client.msal, "ConfidentialClientApplication", FakeApp)
        monkeypatch.setattr(graph_client.requests, "Session", lambda: session)
        config = GraphConfig(tenant_id="tenant", client_id="client", client_secret="secret")
        return GraphClient(config), session

    return _build


@pytest.fixture
def mock_client(tmp_path: Path) -> GraphClient:
    data_file = write_yaml(tmp_path / "directory.yaml", mock_directory_payload())
    return GraphClient(GraphConfig(base_url="mock://local", mock_data_file=data_file))


def test_missing_credentials_raise() -> None:
    with pytest.raises(GraphConfigurationError):
        GraphClient(GraphConfig())


def test_mock_directory_user_lookup_is_case_insensitive(mock_client: GraphClient) -> None:
    user = mock_client.get_user("ADELE@contoso.com")

    assert user["id"] == "u1"
    assert len(user["licenseAssignmentStates"]) == 2
    with pytest.raises(GraphNotFoundError):
        mock_client.get_user("ghost@contoso.com")


def test_mock_directory_groups_and_extensions(mock_client: GraphClient) -> None:
    assert mock_client.get_group(SALES)["displayName"] == "Sales Team"
    assert [entry["id"] for entry in mock_client.list_group_members(SALES)] == ["u1", "u2"]
    assert mock_client.get_user_extension_attribute("u1", "extensionAttribute1") == "Finance"
    assert mock_client.get_user_extension_attribute("u2", "extensionAttribute1") is None
    assert len(mock_client.list_skus()) == 3
    with pytest.raises(GraphNotFoundError):
        mock_client.get_group("missing")


def test_get_user_selects_license_states(http_client) -> None:
    client, session = http_client(FakeResponse(200, {"id": "u1", "licenseAssignmentStates": []}))

    payload = client.get_user("adele@contoso.com")

    assert payload["id"] == "u1"
    call = session.calls[0]
    assert call["url"].endswith("/users/adele@contoso.com")
    assert "licenseAssignmentStates" in call["params"]["$select"]
    assert call["headers"]["Authorization"] == "Bearer token"


def test_group_members_follow_next_link(http_client) -> None:
    next_link = "https://graph.microsoft.com/v1.0/groups/g/members?$skiptoken=abc"
    client, session = http_client(
        FakeResponse(200, {"value": [{"id": "u1"}], "@odata.nextLink": next_link}),
        FakeResponse(200, {"value": [{"id": "u2"}]}),
    )

    members = client.list_group_members("g")

    assert [entry["id"] for entry in members] == ["u1", "u2"]
    assert session.calls[1]["url"] == next_link
    assert session.calls[0]["url"].endswith("/groups/g/members/microsoft.graph.user")


def test_not_found_maps_to_specific_error(http_client) -> None:
    client, _ = http_client(
        FakeResponse(404, {"error": {"code": "Request_ResourceNotFound", "message": "gone"}})
    )

    with pytest.raises(GraphNotFoundError) as excinfo:
        client.get_group("g")

    assert excinfo.value.status_code == 404
    assert excinfo.value.error == "Request_ResourceNotFound"


def test_server_error_without_json_body(http_client) -> None:
    client, _ = http_client(FakeResponse(503, None, text="unavailable"))

    with pytest.raises(GraphRequestError) as excinfo:
        client.list_skus()

    assert excinfo.value.status_code == 503
    assert excinfo.value.description == "unavailable"
    assert not isinstance(excinfo.value, GraphNotFoundError)


def test_on_premises_extension_attribute(http_client) -> None:
    client, session = http_client(
        FakeResponse(200, {"onPremisesExtensionAttributes": {"extensionAttribute3": "Finance"}}),
        FakeResponse(200, {"employeeId": ""}),
    )

    assert client.get_user_extension_attribute("u1", "extensionAttribute3") == "Finance"
    assert client.get_user_extension_attribute("u1", "employeeId") is None
    assert session.calls[0]["params"]["$select"] == "onPremisesExtensionAttributes"
    assert session.calls[1]["params"]["$select"] == "employeeId"
