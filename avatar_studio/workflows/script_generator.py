"""
PDF → validated scene script → scene rows → first scene-process-requested.
"""

import logging
from datetime import datetime, timezone

from .. import events
from ..models import Emotion, Priority, ProjectStatus, SCENE_DURATION_SECONDS
from ..storage import DOCUMENTS_BUCKET
from .script_validation import CHAR_BUDGET, validate_script

logger = logging.getLogger(__name__)

PRIORITY_POLICY_HIGH = "high"
PRIORITY_POLICY_MODEL = "model"


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default


def build_scene_rows(scenes: list[dict], policy: str = PRIORITY_POLICY_HIGH) -> list[dict]:
    """Map model output onto scene columns, numbering scenes by position."""
    rows = []
    for index, scene in enumerate(scenes):
        if policy == PRIORITY_POLICY_MODEL:
            priority = _enum_or(Priority, scene.get("priority"), Priority.MEDIUM)
        else:
            priority = Priority.HIGH
        rows.append({
            "scene_number": index + 1,
            "position": index + 1,
            "script": scene["script"],
            "duration": SCENE_DURATION_SECONDS,
            "visual_description": scene.get("visualDescription") or scene.get("visual_description") or "",
            "image_prompt": scene.get("imagePrompt") or scene.get("image_prompt"),
            "video_prompt": scene.get("videoPrompt") or scene.get("video_prompt"),
            "priority": priority.value,
            "emotion": _enum_or(Emotion, scene.get("emotion"), Emotion.PROFESSIONAL).value,
        })
    return rows


def _load_inputs(store, project_id: str, document_id: str | None) -> dict:
    project = store.get_project(project_id)
    document = store.get_document(document_id) if document_id else store.get_latest_document(project_id)
    return {"project": project.model_dump(mode="json"), "document": document.model_dump(mode="json")}


def _write_script(deps, project: dict, document: dict) -> list[dict]:
    pdf = deps.storage.download(document["storage_path"], bucket=DOCUMENTS_BUCKET)
    result = deps.script_writer.submit(pdf, project["duration"], char_budget=CHAR_BUDGET)
    scenes = validate_script(result.payload["scenes"], summarize=deps.script_writer.summarize)
    return build_scene_rows(scenes, deps.background_priority_policy)


def _create_scenes(store, project_id: str, rows: list[dict]) -> list[dict]:
    existing = store.list_scenes(project_id)
    if existing:
        logger.info(f"[{project_id}] scenes already exist ({len(existing)}), reusing")
        return [s.model_dump(mode="json") for s in existing]
    return [s.model_dump(mode="json") for s in store.create_scenes(project_id, rows)]


def _mark_script_generated(store, project_id: str, scene_count: int) -> str:
    project = store.set_project_status(project_id, ProjectStatus.SCRIPT_GENERATED)
    store.merge_project_metadata(project_id, {
        "script_generated_at": datetime.now(timezone.utc).isoformat(),
        "scene_count": scene_count,
    })
    return project.status.value


def generate_script(ctx, event):
    deps = ctx.deps
    store = deps.store
    data = ctx.data
    project_id = data["project_id"]

    inputs = ctx.run_step("fetch-project-and-document",
                          lambda: _load_inputs(store, project_id, data.get("document_id")))
    project = inputs["project"]

    rows = ctx.run_step("generate-script", lambda: _write_script(deps, project, inputs["document"]))
    scenes = ctx.run_step("create-scenes", lambda: _create_scenes(store, project_id, rows))

    ctx.run_step("update-project-status", lambda: _mark_script_generated(store, project_id, len(scenes)))

    if project["avatar_design_mode"] == "custom" and project.get("avatar_design_status") != "completed":
        ctx.send_event("request-avatar-design", events.AVATAR_DESIGN_REQUESTED, {"project_id": project_id})

    ctx.send_event("trigger-scene-processing", events.SCENE_PROCESS_REQUESTED, {
        "project_id": project_id,
        "scene_id": scenes[0]["id"],
        "user_id": data.get("user_id"),
    })

    logger.info(f"[{project_id}] script generated: {len(scenes)} scenes")
    return {"success": True, "project_id": project_id, "scenes_created": len(scenes)}


def on_script_failure(ctx, error: BaseException):
    ctx.deps.store.set_project_status(ctx.data["project_id"], ProjectStatus.FAILED, error_message=str(error))
