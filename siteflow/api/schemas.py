from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RowPayload(BaseModel):
    file_id: str
    row: Dict[str, Any]
    headers: List[str]

    model_config = ConfigDict(extra="forbid")


class RouteRequest(BaseModel):
    issue: str
    device_type: Optional[str] = None
    circle: Optional[str] = None
    site_code: Optional[str] = None
    division: Optional[str] = None


class ObservationRequest(RowPayload):
    issue_type: str = ""
    status: str = "Pending"
    remarks: str = ""
    photos: List[str] = Field(default_factory=list)
    priority: str = "Medium"


class SubmitActionRequest(BaseModel):
    row_data: Dict[str, Any]
    headers: List[str]
    destination_team: str
    issue_type: str
    remarks: str = ""
    photos: List[str] = Field(default_factory=list)
    source_file_id: str = ""
    row_key: Optional[str] = None
    priority: str = "Medium"

    model_config = ConfigDict(extra="forbid")


class UpdateStatusRequest(BaseModel):
    status: str
    remarks: Optional[str] = None
    photos: Optional[List[str]] = None
    outcome: Optional[str] = None


class RerouteRequest(BaseModel):
    new_assignee_role: str
    new_assignee_user_id: Optional[str] = None
    remarks: Optional[str] = None
    photos: Optional[List[str]] = None


class FilterRowsRequest(BaseModel):
    rows: List[Dict[str, Any]]
    headers: List[str]


class DestinationPublicResponse(BaseModel):
    team: str
    role: str
    vendor: Optional[str] = None
    label: str
    rule: Optional[str] = None


class RoutePublicResponse(BaseModel):
    issue: str
    site_code: str
    destinations: List[DestinationPublicResponse]
    warnings: List[str] = Field(default_factory=list)


class ActionPublicResponse(BaseModel):
    id: str
    kind: str
    source_file_id: str
    row_key: str
    site_code: str
    device_type: Optional[str] = None
    type_of_issue: str
    assigned_by_role: str
    assigned_to_role: str
    assigned_to_user_id: Optional[str] = None
    assigned_to_vendor: Optional[str] = None
    status: str
    priority: Optional[str] = None
    remarks: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    approval_outcome: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ActionListPublicResponse(BaseModel):
    role: str
    count: int
    actions: List[ActionPublicResponse]


class DestinationOutcomePublicResponse(BaseModel):
    destination: DestinationPublicResponse
    ok: bool
    action_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1


class ObservationPublicResponse(BaseModel):
    row_key: str
    site_code: str
    observation_status: str
    complete: bool
    outcomes: List[DestinationOutcomePublicResponse] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    approval: Optional[ActionPublicResponse] = None


class ExclusionPublicResponse(BaseModel):
    file_id: Optional[str] = None
    row_keys: List[str]
    site_codes: List[str]


class SiteStatusPublicResponse(BaseModel):
    site_code: str
    viewer_role: str
    display_status: str
    excluded: bool
