"""
Scene orchestrator: drives one scene through its stages, then chains to the
next scene (or composition) by emitting another event.

    [avatar design wait] → TTS → avatar → background → rate-limit sleep
        → scene-process-requested(next scene) | video-compose-requested

Each stage is requested by event and awaited by event; nothing is held in
memory between invocations. A stage that times out or reports failure
fails the scene and the project.
"""

import logging
from typing import NamedTuple

from .. import events
from ..errors import NotFoundError, StageFailedError, StepTimeoutError, WorkflowError
from ..models import AvatarDesignMode, ProjectStatus, Stage, StageStatus

logger = logging.getLogger(__name__)

AVATAR_DESIGN_TIMEOUT = 3 * 60
TTS_TIMEOUT = 5 * 60
AVATAR_TIMEOUT = 5 * 60
BACKGROUND_TIMEOUT = 15 * 60
RATE_LIMIT_DELAY = 2


class StageStep(NamedTuple):
    stage: Stage
    request_event: str
    completed_event: str
    timeout: int


STAGE_STEPS = (
    StageStep(Stage.TTS, events.TTS_REQUESTED, events.TTS_COMPLETED, TTS_TIMEOUT),
    StageStep(Stage.AVATAR, events.AVATAR_REQUESTED, events.AVATAR_COMPLETED, AVATAR_TIMEOUT),
    StageStep(Stage.BACKGROUND, events.BACKGROUND_REQUESTED, events.BACKGROUND_COMPLETED, BACKGROUND_TIMEOUT),
)


def _load_scene_context(store, project_id: str, scene_id: str) -> dict:
    project = store.get_project(project_id)
    if project.is_deleted:
        return {"skip": "project deleted"}
    if project.status == ProjectStatus.FAILED:
        return {"skip": "project already failed"}

    scene_ids = [s.id for s in store.list_scenes(project_id)]
    if scene_id not in scene_ids:
        raise NotFoundError(f"Scene {scene_id} does not belong to project {project_id}")
    index = scene_ids.index(scene_id)
    return {
        "skip": None,
        "position": index + 1,
        "total_scenes": len(scene_ids),
        "next_scene_id": scene_ids[index + 1] if index + 1 < len(scene_ids) else None,
    }


def _needs_avatar_design_wait(store, project_id: str) -> bool:
    project = store.get_project(project_id)
    if project.avatar_design_mode != AvatarDesignMode.CUSTOM:
        return False
    if project.metadata.get("fallback_to_preset"):
        return False
    return project.avatar_design_status in (None, StageStatus.PENDING, StageStatus.GENERATING)


def _verify_stage_completed(store, scene_id: str, stage: Stage) -> str:
    scene = store.get_scene(scene_id)
    status = scene.stage_status(stage)
    if status == StageStatus.FAILED:
        raise StageFailedError(stage.value, scene_id, scene.error_message or "stage marked failed")
    if status != StageStatus.COMPLETED:
        # Completion event seen before the row; retry the check
        raise WorkflowError(f"Scene {scene_id} {stage.value} is '{status.value}' after its completion event")
    return status.value


def process_scene(ctx, event):
    store = ctx.deps.store
    data = ctx.data
    project_id = data["project_id"]
    scene_id = data["scene_id"]
    payload = {"project_id": project_id, "scene_id": scene_id, "user_id": data.get("user_id")}

    context = ctx.run_step("fetch-scene", lambda: _load_scene_context(store, project_id, scene_id))
    if context["skip"]:
        logger.warning(f"[{project_id}] skipping scene {scene_id}: {context['skip']}")
        return {"skipped": True, "reason": context["skip"], "scene_id": scene_id}

    needs_wait = ctx.run_step("check-avatar-design-status",
                              lambda: _needs_avatar_design_wait(store, project_id))
    if needs_wait:
        design = ctx.wait_for_event("wait-for-avatar-design", event=events.AVATAR_DESIGN_COMPLETED,
                                    timeout=AVATAR_DESIGN_TIMEOUT, match="project_id")
        if design is None:
            logger.warning(f"[{project_id}] timed out waiting for custom avatar design, using preset avatar")
        elif design["data"].get("fallback_to_preset"):
            logger.warning(f"[{project_id}] avatar design fell back to preset: {design['data'].get('reason')}")
        else:
            logger.info(f"[{project_id}] custom avatar design ready")

    for step in STAGE_STEPS:
        name = step.stage.value
        ctx.send_event(f"trigger-{name}", step.request_event, payload)
        completion = ctx.wait_for_event(f"wait-for-{name}", event=step.completed_event,
                                        timeout=step.timeout, match="scene_id")
        if completion is None:
            raise StepTimeoutError(name, scene_id, step.timeout)
        if completion["data"].get("status") == StageStatus.FAILED.value:
            raise StageFailedError(name, scene_id, completion["data"].get("error") or "unknown error")
        ctx.run_step(f"verify-{name}-completed",
                     lambda: _verify_stage_completed(store, scene_id, step.stage))
        logger.info(f"[{scene_id}] {name} completed ({context['position']}/{context['total_scenes']})")

    ctx.sleep("rate-limit", RATE_LIMIT_DELAY)

    if context["next_scene_id"]:
        ctx.send_event("trigger-next-scene", events.SCENE_PROCESS_REQUESTED,
                       {**payload, "scene_id": context["next_scene_id"]})
    else:
        ctx.send_event("trigger-video-compositor", events.VIDEO_COMPOSE_REQUESTED,
                       {"project_id": project_id, "user_id": data.get("user_id")})

    return {"success": True, "scene_id": scene_id, "next_scene_id": context["next_scene_id"]}


def on_scene_failure(ctx, error: BaseException):
    store = ctx.deps.store
    project_id = ctx.data["project_id"]
    message = str(error)

    if isinstance(error, StepTimeoutError):
        scene = store.get_scene(error.scene_id)
        if scene.stage_status(error.stage) != StageStatus.COMPLETED:
            store.set_stage_status(error.scene_id, error.stage, StageStatus.FAILED, error_message=message)

    store.set_project_status(project_id, ProjectStatus.FAILED, error_message=message)
    logger.error(f"[{project_id}] scene {ctx.data.get('scene_id')} failed, project marked failed: {message}")
