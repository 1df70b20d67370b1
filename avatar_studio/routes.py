"""
FastAPI routes for the scene workflow worker.

Project Endpoints:
  POST /projects/{id}/generate-script  — PDF → script → scenes (editor)
  POST /projects/{id}/process-scenes   — start the per-scene pipeline (editor)
  POST /projects/{id}/render           — on-demand final render (viewer)

Internal Endpoints:
  POST /events                         — event ingestion (X-Worker-Secret)
  GET  /runs/{run_id}                  — workflow run state

Webhooks:
  POST /webhooks/did                   — D-ID talk completion (bearer token)

Caller identity comes from the X-User-Id header set by the gateway.
"""

import os
import secrets
import logging

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request

from . import events
from .errors import InvalidTransitionError, NotFoundError
from .models import (
    ActionResponse,
    AvatarDesignMode,
    DIDWebhookPayload,
    EventIn,
    ProjectStatus,
    Relation,
    RunResponse,
    Stage,
    StageStatus,
)
from .permissions import require_access
from .render import render_project
from .webhooks import handle_did_webhook

logger = logging.getLogger(__name__)


def _engine(request: Request):
    return request.app.state.engine


def _services(request: Request):
    return request.app.state.services


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _load_project(services, user_id: str, project_id: str, relation: Relation):
    require_access(services.db, user_id, project_id, relation)
    project = services.store.get_project(project_id)
    if project.is_deleted:
        raise NotFoundError(f"Project {project_id} not found")
    return project


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


@project_router.post("/{project_id}/generate-script", response_model=ActionResponse)
def generate_script(project_id: str, request: Request, x_user_id: str = Header(default="")):
    """
    Start script generation from the latest uploaded document.

    A draft project goes through document validation first.

    Errors:
      - 400: no document, or project not ready for scripting
      - 403: caller lacks editor access
      - 404: project not found
    """
    services = _services(request)
    engine = _engine(request)
    try:
        project = _load_project(services, x_user_id, project_id, Relation.EDITOR)
        try:
            document = services.store.get_latest_document(project_id)
        except NotFoundError as e:
            raise ValueError(str(e)) from e

        payload = {"project_id": project_id, "document_id": document.id, "user_id": x_user_id}
        if project.status == ProjectStatus.DRAFT:
            event_id = engine.emit(events.DOCUMENT_VALIDATE_REQUESTED, payload)
            message = "Document validation started"
        elif project.status in (ProjectStatus.DOCUMENT_UPLOADED, ProjectStatus.SCRIPT_GENERATED):
            event_id = engine.emit(events.SCRIPT_GENERATION_REQUESTED, payload)
            message = "Script generation started"
        else:
            raise ValueError(f"Project is '{project.status.value}', cannot generate a script")
    except (PermissionError, NotFoundError, ValueError) as e:
        raise _http_error(e)

    logger.info(f"[{project_id}] {message.lower()} by {x_user_id}")
    return ActionResponse(status="started", project_id=project_id, event_ids=[event_id], message=message)


@project_router.post("/{project_id}/process-scenes", response_model=ActionResponse)
def process_scenes(project_id: str, request: Request, x_user_id: str = Header(default="")):
    """
    Kick off scene processing at the first scene; each scene chains to the
    next. Custom-avatar projects also get their avatar design requested.

    Errors:
      - 400: project not scripted, or no scenes
      - 409: a scene has already left ``pending``
    """
    services = _services(request)
    engine = _engine(request)
    try:
        project = _load_project(services, x_user_id, project_id, Relation.EDITOR)
        if project.status != ProjectStatus.SCRIPT_GENERATED:
            raise ValueError(f"Project is '{project.status.value}', scenes can only be processed after scripting")
        scenes = services.store.list_scenes(project_id)
        if not scenes:
            raise ValueError(f"Project {project_id} has no scenes")
    except (PermissionError, NotFoundError, ValueError) as e:
        raise _http_error(e)

    started = [s.scene_number for s in scenes if any(
        s.stage_status(stage) != StageStatus.PENDING for stage in Stage
    )]
    if started:
        raise HTTPException(
            status_code=409,
            detail=f"Scene processing already started (scenes {', '.join(map(str, started))})",
        )

    event_ids = []
    if project.avatar_design_mode == AvatarDesignMode.CUSTOM and project.avatar_design_status in (
        None, StageStatus.PENDING, StageStatus.FAILED,
    ):
        event_ids.append(engine.emit(events.AVATAR_DESIGN_REQUESTED, {"project_id": project_id}))

    event_ids.append(engine.emit(events.SCENE_PROCESS_REQUESTED, {
        "project_id": project_id,
        "scene_id": scenes[0].id,
        "user_id": x_user_id,
    }))

    logger.info(f"[{project_id}] scene processing started ({len(scenes)} scenes)")
    return ActionResponse(
        status="started",
        project_id=project_id,
        event_ids=event_ids,
        message=f"Processing {len(scenes)} scenes",
    )


@project_router.post("/{project_id}/render", response_model=ActionResponse)
def render(project_id: str, request: Request, background_tasks: BackgroundTasks,
           x_user_id: str = Header(default="")):
    """Render the final video from the composition manifest (async)."""
    services = _services(request)
    try:
        project = _load_project(services, x_user_id, project_id, Relation.VIEWER)
        if project.status != ProjectStatus.SCENES_PROCESSED:
            raise ValueError(f"Project is '{project.status.value}', only processed projects can be rendered")
        if not project.metadata.get("composition"):
            raise ValueError(f"Project {project_id} has no composition manifest")
        services.store.set_project_status(project_id, ProjectStatus.RENDERING)
    except (PermissionError, NotFoundError, ValueError, InvalidTransitionError) as e:
        raise _http_error(e)

    background_tasks.add_task(render_project, services, project_id)
    return ActionResponse(status="rendering", project_id=project_id, message="Render started")


# ═════════════════════════════════════════════════════════════════════════════
# Internal Router — event ingestion and run inspection
# ═════════════════════════════════════════════════════════════════════════════

internal_router = APIRouter(tags=["internal"])


@internal_router.post("/events")
def ingest_event(body: EventIn, request: Request):
    """Emit an event onto the workflow bus."""
    if body.name not in events.ALL_EVENTS:
        raise HTTPException(status_code=400, detail=f"Unknown event '{body.name}'")
    if not body.data.get("project_id"):
        raise HTTPException(status_code=400, detail="Event data must include project_id")

    event_id = _engine(request).emit(body.name, body.data)
    return {"status": "ok", "event_id": event_id}


@internal_router.get("/runs/{run_id}", response_model=RunResponse)
def get_run(run_id: str, request: Request):
    engine = _engine(request)
    run = engine.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse(
        id=run["id"],
        function_id=run["function_id"],
        status=run["status"],
        attempt=run["attempt"],
        event=run["event"],
        output=run["output"],
        error=run["error"],
        steps=sorted(engine.get_steps(run_id)),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Webhook Router
# ═════════════════════════════════════════════════════════════════════════════

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _check_bearer(authorization: str):
    token = os.environ.get("WEBHOOK_SHARED_TOKEN", "")
    if not token:
        if os.environ.get("ENVIRONMENT", "development") == "development":
            return
        raise HTTPException(status_code=500, detail="WEBHOOK_SHARED_TOKEN not configured")
    scheme, _, provided = authorization.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(provided, token):
        raise HTTPException(status_code=401, detail="Invalid or missing webhook token")


@webhook_router.post("/did")
def did_webhook(payload: DIDWebhookPayload, request: Request, authorization: str = Header(default="")):
    """D-ID talk completion callback."""
    _check_bearer(authorization)
    try:
        return handle_did_webhook(_engine(request), _services(request), payload)
    except NotFoundError as e:
        raise _http_error(e)
