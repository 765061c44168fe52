from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException

from siteflow.api.public_views import (
    public_action_list_payload,
    public_action_payload,
    public_exclusion_payload,
    public_observation_payload,
    public_route_payload,
)
from siteflow.api.schemas import (
    ActionListPublicResponse,
    ActionPublicResponse,
    ExclusionPublicResponse,
    FilterRowsRequest,
    ObservationPublicResponse,
    ObservationRequest,
    RerouteRequest,
    RoutePublicResponse,
    RouteRequest,
    RowPayload,
    SiteStatusPublicResponse,
    SubmitActionRequest,
    UpdateStatusRequest,
)
from siteflow.api.webhooks import (
    ACTION_ASSIGNED,
    ACTION_REROUTED,
    APPROVAL_DECIDED,
    APPROVAL_REQUESTED,
    notify_assignment,
)
from siteflow.core.config import NotificationConfig, config
from siteflow.core.identity import normalize_site_code
from siteflow.core.version import __version__
from siteflow.workflow.actions import Action, ActionNotFound, ApprovalOutcome, InvalidTransition
from siteflow.workflow.engine import WorkflowEngine
from siteflow.workflow.observations import ObservationStatus

app = FastAPI(
    title="SiteFlow API",
    description="Issue routing and approval tracking for field equipment sites",
    version=__version__,
)

ENGINE = WorkflowEngine()


def _require_role(x_role: Optional[str]) -> str:
    role = (x_role or "").strip()
    if not role:
        raise HTTPException(status_code=400, detail="Missing X-Role header")
    return role


def _parse_outcome(raw: Optional[str]) -> Optional[ApprovalOutcome]:
    if raw is None or not raw.strip():
        return None
    token = raw.strip().lower()
    for outcome in ApprovalOutcome:
        if outcome.value.lower() == token:
            return outcome
    raise HTTPException(status_code=400, detail=f"Unsupported approval outcome: {raw}")


def _parse_observation_status(raw: str) -> ObservationStatus:
    token = (raw or "").strip().lower()
    for status in ObservationStatus:
        if status.value.lower() == token:
            return status
    raise HTTPException(status_code=400, detail=f"Unsupported observation status: {raw}")


def _notify(background_tasks: BackgroundTasks, event: str, action: Action) -> None:
    if NotificationConfig.from_env().enabled:
        background_tasks.add_task(notify_assignment, event, action.model_copy(deep=True))


def _health_diagnostics() -> Dict[str, Any]:
    return {
        "store": {"mode": config.store.mode},
        "sync": {"debounce_ms": config.sync.debounce_ms, "refresh_interval_s": config.sync.refresh_interval_s},
        "routing": {
            "circle_vendors": dict(config.routing.circle_vendors),
            "override_vendor": config.routing.override_vendor,
            "override_workbook_configured": bool(config.routing.override_workbook_path),
        },
        "webhook_configured": NotificationConfig.from_env().enabled,
    }


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": __version__, "diagnostics": _health_diagnostics()}


@app.post("/row-key")
def resolve_row_key(req: RowPayload):
    return {"file_id": req.file_id, "row_key": ENGINE.resolve_row_key(req.file_id, req.row, req.headers)}


@app.post("/route", response_model=RoutePublicResponse)
def route(req: RouteRequest):
    if not req.issue.strip():
        raise HTTPException(status_code=400, detail="Missing issue")
    result = ENGINE.route(req.issue, req.device_type, req.circle, req.site_code, req.division)
    return public_route_payload(result)


@app.post("/observations", response_model=ObservationPublicResponse)
def submit_observation(
    req: ObservationRequest,
    background_tasks: BackgroundTasks,
    x_role: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    status = _parse_observation_status(req.status)
    try:
        result = ENGINE.submit_observation(
            req.file_id,
            req.row,
            req.headers,
            req.issue_type,
            actor_role=role,
            actor_user_id=x_user_id or "",
            remarks=req.remarks,
            photos=req.photos,
            status=status,
            priority=req.priority,
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    for action in result.routing.created:
        _notify(background_tasks, ACTION_ASSIGNED, action)
    if result.approval is not None:
        _notify(background_tasks, APPROVAL_REQUESTED, result.approval)
    return public_observation_payload(result)


@app.post("/actions", response_model=ActionPublicResponse)
def submit_action(
    req: SubmitActionRequest,
    background_tasks: BackgroundTasks,
    x_role: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    try:
        action = ENGINE.submit_action(
            req.row_data,
            req.headers,
            req.destination_team,
            req.issue_type,
            req.remarks,
            req.photos,
            req.source_file_id,
            req.row_key,
            actor_role=role,
            actor_user_id=x_user_id or "",
            priority=req.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _notify(background_tasks, ACTION_ASSIGNED, action)
    return public_action_payload(action)


@app.post("/actions/{action_id}/status", response_model=ActionPublicResponse)
def update_action_status(
    action_id: str,
    req: UpdateStatusRequest,
    background_tasks: BackgroundTasks,
    x_role: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    outcome = _parse_outcome(req.outcome)
    try:
        action = ENGINE.update_action_status(
            action_id,
            req.status,
            req.remarks,
            actor_role=role,
            actor_user_id=x_user_id or "",
            outcome=outcome,
            photos=req.photos,
        )
    except ActionNotFound as exc:
        raise HTTPException(status_code=404, detail="Action not found") from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if action.is_approval and action.approval_outcome is not None:
        _notify(background_tasks, APPROVAL_DECIDED, action)
    next_approval = ENGINE.next_approval(action)
    if next_approval is not None:
        _notify(background_tasks, APPROVAL_REQUESTED, next_approval)
    return public_action_payload(action)


@app.post("/actions/{action_id}/reroute", response_model=ActionPublicResponse)
def reroute_action(
    action_id: str,
    req: RerouteRequest,
    background_tasks: BackgroundTasks,
    x_role: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    if not req.new_assignee_role.strip():
        raise HTTPException(status_code=400, detail="Missing new_assignee_role")
    try:
        action = ENGINE.reroute_action(
            action_id,
            req.new_assignee_role,
            req.new_assignee_user_id,
            req.remarks,
            req.photos,
            actor_role=role,
        )
    except ActionNotFound as exc:
        raise HTTPException(status_code=404, detail="Action not found") from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    _notify(background_tasks, ACTION_REROUTED, action)
    return public_action_payload(action)


@app.get("/actions/mine", response_model=ActionListPublicResponse)
def list_my_actions(
    include_excluded: bool = False,
    x_role: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    actions = ENGINE.list_my_actions(role, x_user_id, include_excluded=include_excluded)
    return public_action_list_payload(role, actions)


@app.get("/actions/routed", response_model=ActionListPublicResponse)
def list_actions_i_routed(
    include_excluded: bool = False,
    x_role: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    actions = ENGINE.list_actions_i_routed(role, x_user_id, include_excluded=include_excluded)
    return public_action_list_payload(role, actions)


@app.get("/excluded", response_model=ExclusionPublicResponse)
def list_all_excluded_sites():
    return public_exclusion_payload(ENGINE.list_excluded_sites(None))


@app.get("/files/{file_id}/excluded", response_model=ExclusionPublicResponse)
def list_excluded_sites(file_id: str):
    return public_exclusion_payload(ENGINE.list_excluded_sites(file_id), file_id)


@app.post("/files/{file_id}/rows/filter")
def filter_rows(file_id: str, req: FilterRowsRequest):
    rows = ENGINE.filter_rows(file_id, req.rows, req.headers)
    return {"file_id": file_id, "count": len(rows), "rows": rows}


@app.get("/sites/{site_code}/status", response_model=SiteStatusPublicResponse)
def site_status(
    site_code: str,
    row_key: Optional[str] = None,
    file_id: Optional[str] = None,
    x_role: Optional[str] = Header(default=None),
):
    role = _require_role(x_role)
    code = normalize_site_code(site_code)
    return {
        "site_code": code,
        "viewer_role": role,
        "display_status": ENGINE.display_status(code, role, row_key=row_key),
        "excluded": ENGINE.is_excluded(row_key, code, file_id),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.api_host, port=config.api_port, reload=config.debug)
