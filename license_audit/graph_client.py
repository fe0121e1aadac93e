"""Microsoft Graph directory client used by the license reports."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import msal
import requests
import yaml

from .config import GraphConfig


logger = logging.getLogger(__name__)

GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
USER_SELECT = "id,displayName,userPrincipalName,licenseAssignmentStates"
MEMBER_SELECT = "id,displayName,userPrincipalName,mail"
ON_PREMISES_EXTENSIONS = "onPremisesExtensionAttributes"


class GraphClientError(RuntimeError):
    """Base exception for directory client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when the Graph integration is not configured."""


class GraphRequestError(GraphClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class GraphNotFoundError(GraphRequestError):
    """Raised when the requested directory object does not exist."""


def _not_found(kind: str, identifier: str) -> GraphNotFoundError:
    return GraphNotFoundError(
        404, "Request_ResourceNotFound", f"{kind} '{identifier}' does not exist."
    )


def _extension_value(payload: Dict[str, Any], name: str) -> Optional[str]:
    if name.startswith("extensionAttribute"):
        value = (payload.get(ON_PREMISES_EXTENSIONS) or {}).get(name)
    else:
        value = payload.get(name)
    if value is None or value == "":
        return None
    return str(value)


class MockDirectory:
    """YAML-backed directory emulator used for offline runs and tests.

    The data file mirrors the Graph payload shapes::

        skus:   [{skuId, skuPartNumber}]
        groups: [{id, displayName, groupTypes, members: [user id, ...]}]
        users:  [{id, displayName, userPrincipalName,
                  licenseAssignmentStates: [...], extensions: {name: value}}]
    """

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"skus": [], "groups": [], "users": []}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        elif self.data_file:
            logger.warning("Mock directory file %s not found; using an empty directory.", self.data_file)
        self._data.setdefault("skus", [])
        self._data.setdefault("groups", [])
        self._data.setdefault("users", [])

    def _find_user(self, identifier: str) -> Dict[str, Any]:
        lowered = (identifier or "").strip().lower()
        for user in self._data["users"]:
            candidates = (user.get("id"), user.get("userPrincipalName"), user.get("mail"))
            if lowered in {str(value).lower() for value in candidates if value}:
                return user
        raise _not_found("User", identifier)

    def _find_group(self, group_id: str) -> Dict[str, Any]:
        for group in self._data["groups"]:
            if str(group.get("id")) == group_id:
                return group
        raise _not_found("Group", group_id)

    def list_skus(self) -> List[Dict[str, Any]]:
        return [dict(sku) for sku in self._data["skus"]]

    def get_user(self, identifier: str) -> Dict[str, Any]:
        user = self._find_user(identifier)
        return {
            "id": user.get("id"),
            "displayName": user.get("displayName"),
            "userPrincipalName": user.get("userPrincipalName"),
            "licenseAssignmentStates": [
                dict(state) for state in user.get("licenseAssignmentStates") or []
            ],
        }

    def get_group(self, group_id: str) -> Dict[str, Any]:
        group = self._find_group(group_id)
        return {
            "id": group.get("id"),
            "displayName": group.get("displayName"),
            "groupTypes": list(group.get("groupTypes") or []),
        }

    def list_group_members(self, group_id: str) -> List[Dict[str, Any]]:
        group = self._find_group(group_id)
        members: List[Dict[str, Any]] = []
        for member_id in group.get("members") or []:
            try:
                user = self._find_user(str(member_id))
            except GraphNotFoundError:
                continue
            members.append(
                {
                    "id": user.get("id"),
                    "displayName": user.get("displayName"),
                    "userPrincipalName": user.get("userPrincipalName"),
                    "mail": user.get("mail"),
                }
            )
        return members

    def get_user_extension_attribute(self, user_id: str, name: str) -> Optional[str]:
        user = self._find_user(user_id)
        value = (user.get("extensions") or {}).get(name)
        if value is None or value == "":
            return None
        return str(value)


class GraphClient:
    """Read-only Microsoft Graph client covering the directory queries the reports need."""

    def __init__(self, config: GraphConfig) -> None:
        self._config = config
        self._mock_directory: Optional[MockDirectory] = None

        if config.is_mock:
            self._mock_directory = MockDirectory(config.mock_data_file)
            return

        if not config.has_credentials:
            raise GraphConfigurationError(
                "Microsoft Graph credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = requests.Session()

    def close(self) -> None:
        if self._mock_directory is None:
            self._session.close()

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        with self._token_lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise GraphRequestError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else self._config.base_url + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")

        logger.debug("Graph %s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                timeout=self._config.timeout,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise GraphRequestError(0, "TransportError", str(exc)) from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            if response.status_code == 404:
                raise GraphNotFoundError(response.status_code, code, message)
            raise GraphRequestError(response.status_code, code, message)

        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        result = self._request("GET", path, params=params)
        while True:
            yield from result.get("value", [])
            next_link = result.get("@odata.nextLink")
            if not next_link:
                return
            # nextLink already carries the original query string
            result = self._request("GET", next_link)

    # ------------------------------------------------------------------ #
    # Directory queries                                                  #
    # ------------------------------------------------------------------ #
    def list_skus(self) -> List[Dict[str, Any]]:
        if self._mock_directory:
            return self._mock_directory.list_skus()

        result = self._request(
            "GET",
            "/subscribedSkus",
            params={"$select": "skuId,skuPartNumber"},
        )
        return result.get("value", [])

    def get_user(self, identifier: str) -> Dict[str, Any]:
        """Fetch a user by object id or user principal name, with license states."""

        if self._mock_directory:
            return self._mock_directory.get_user(identifier)

        cleaned = (identifier or "").strip()
        if not cleaned:
            raise _not_found("User", identifier)
        return self._request(
            "GET",
            f"/users/{quote(cleaned, safe='@')}",
            params={"$select": USER_SELECT},
        )

    def get_group(self, group_id: str) -> Dict[str, Any]:
        if self._mock_directory:
            return self._mock_directory.get_group(group_id)

        return self._request(
            "GET",
            f"/groups/{quote(group_id, safe='')}",
            params={"$select": "id,displayName,groupTypes"},
        )

    def list_group_members(self, group_id: str) -> List[Dict[str, Any]]:
        """Return the direct user members of a group, following paging links."""

        if self._mock_directory:
            return self._mock_directory.list_group_members(group_id)

        params = {"$select": MEMBER_SELECT, "$top": str(self._config.page_size)}
        return list(
            self._paged(f"/groups/{quote(group_id, safe='')}/members/microsoft.graph.user", params)
        )

    def get_user_extension_attribute(self, user_id: str, name: str) -> Optional[str]:
        """Read one extension attribute; ``extensionAttributeN`` maps to the on-premises set."""

        if self._mock_directory:
            return self._mock_directory.get_user_extension_attribute(user_id, name)

        select = ON_PREMISES_EXTENSIONS if name.startswith("extensionAttribute") else name
        payload = self._request(
            "GET",
            f"/users/{quote(user_id, safe='@')}",
            params={"$select": select},
        )
        return _extension_value(payload, name)


__all__ = [
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "GraphNotFoundError",
    "GraphRequestError",
    "MockDirectory",
]
