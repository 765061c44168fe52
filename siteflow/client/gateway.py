from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from siteflow.workflow.actions import Action, ActionNotFound, InvalidTransition
from siteflow.workflow.exclusion import ExclusionSet

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """A remote call failed for a reason other than an illegal transition."""


class ActionGateway:
    """HTTP client for the action collaborator operations."""

    def __init__(
        self,
        base_url: str,
        role: str,
        user_id: str = "",
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.role = role
        self.user_id = user_id
        headers = {"X-Role": role}
        if user_id:
            headers["X-User-Id"] = user_id
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout_s, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ActionGateway":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, *, action_id: str = "", **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404 and action_id:
            raise ActionNotFound(action_id)
        if response.status_code == 409:
            detail = response.json().get("detail", "")
            raise InvalidTransition(action_id, method.lower(), str(detail))
        if response.status_code >= 400:
            raise GatewayError(f"{method} {path} returned HTTP {response.status_code}: {response.text}")
        return response.json()

    def submit_action(
        self,
        row_data: Dict[str, Any],
        headers: List[str],
        destination_team: str,
        issue_type: str,
        remarks: str = "",
        photos: Optional[List[str]] = None,
        source_file_id: str = "",
        row_key: Optional[str] = None,
    ) -> Action:
        body = {
            "row_data": row_data,
            "headers": list(headers),
            "destination_team": destination_team,
            "issue_type": issue_type,
            "remarks": remarks,
            "photos": list(photos or []),
            "source_file_id": source_file_id,
            "row_key": row_key,
        }
        return Action.model_validate(self._request("POST", "/actions", json=body))

    def update_action_status(
        self,
        action_id: str,
        status: str,
        remarks: Optional[str] = None,
        *,
        outcome: Optional[str] = None,
        photos: Optional[List[str]] = None,
    ) -> Action:
        body: Dict[str, Any] = {"status": status, "remarks": remarks, "outcome": outcome, "photos": photos}
        payload = self._request("POST", f"/actions/{action_id}/status", action_id=action_id, json=body)
        return Action.model_validate(payload)

    def reroute_action(
        self,
        action_id: str,
        new_assignee_role: str,
        new_assignee_user_id: Optional[str] = None,
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
    ) -> Action:
        body = {
            "new_assignee_role": new_assignee_role,
            "new_assignee_user_id": new_assignee_user_id,
            "remarks": remarks,
            "photos": photos,
        }
        payload = self._request("POST", f"/actions/{action_id}/reroute", action_id=action_id, json=body)
        return Action.model_validate(payload)

    def list_my_actions(self) -> List[Action]:
        payload = self._request("GET", "/actions/mine")
        return [Action.model_validate(row) for row in payload.get("actions", [])]

    def list_actions_i_routed(self) -> List[Action]:
        payload = self._request("GET", "/actions/routed")
        return [Action.model_validate(row) for row in payload.get("actions", [])]

    def list_excluded_sites(self, file_id: str) -> ExclusionSet:
        payload = self._request("GET", f"/files/{file_id}/excluded")
        return ExclusionSet(
            file_id=file_id,
            row_keys=list(payload.get("row_keys") or []),
            site_codes=list(payload.get("site_codes") or []),
        )

    def display_status(self, site_code: str, row_key: Optional[str] = None) -> str:
        params = {"row_key": row_key} if row_key else None
        payload = self._request("GET", f"/sites/{site_code}/status", params=params)
        return str(payload.get("display_status") or "")
