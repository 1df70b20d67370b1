"""
Helpers shared by the stage workflows and polling loops.
"""

import logging
from typing import Optional

from ..models import Stage, StageStatus

logger = logging.getLogger(__name__)


def fetch_scene(ctx, scene_id: str, step: str = "fetch-scene") -> dict:
    return ctx.run_step(step, lambda: ctx.deps.store.get_scene(scene_id).model_dump(mode="json"))


def completion_data(scene: dict, status: str = "completed", error: Optional[str] = None, **extra) -> dict:
    data = {
        "project_id": scene["project_id"],
        "scene_id": scene["id"],
        "scene_number": scene["scene_number"],
        "status": status,
        **extra,
    }
    if error:
        data["error"] = error
    return data


def stage_failure_handler(stage: Stage, completed_event: str, render_job_key: Optional[str] = None):
    """
    Build an on_failure hook that marks the scene stage failed and tells a
    waiting orchestrator, instead of leaving it to time out.
    """

    def on_failure(ctx, error: BaseException):
        store = ctx.deps.store
        data = ctx.data
        scene_id = data["scene_id"]
        message = str(error)

        if render_job_key and data.get(render_job_key):
            store.update_render_job(data[render_job_key], status="failed", error_message=message)

        scene = store.get_scene(scene_id)
        if scene.stage_status(stage) == StageStatus.COMPLETED:
            logger.warning(f"[{scene_id}] {stage.value} already completed, ignoring failure: {message}")
            return

        store.set_stage_status(scene_id, stage, StageStatus.FAILED, error_message=message)
        ctx.engine.emit(completed_event, completion_data(
            scene.model_dump(mode="json"), status=StageStatus.FAILED.value, error=message,
        ))
        logger.error(f"[{scene_id}] {stage.value} stage failed: {message}")

    return on_failure


def skip_if_completed(ctx, scene: dict, stage: Stage, completed_event: str) -> bool:
    """Re-announce an already completed stage instead of redoing it."""
    if scene[stage.status_column] != StageStatus.COMPLETED.value:
        return False
    logger.info(f"[{scene['id']}] {stage.value} already completed, skipping")
    ctx.send_event(f"notify-{stage.value}-already-completed", completed_event, completion_data(scene))
    return True


def find_in_flight_job(ctx, scene: dict, stage: Stage, provider: str) -> Optional[str]:
    """
    External id of a provider job another run already started for this
    stage. Its polling loop will announce the completion, so a duplicate
    request must not submit a second job.
    """

    def lookup():
        if ctx.deps.store.get_scene(scene["id"]).stage_status(stage) != StageStatus.GENERATING:
            return None
        job = ctx.deps.store.find_active_render_job(scene["id"], provider)
        return job.external_id if job else None

    external_id = ctx.run_step(f"check-in-flight-{stage.value}-job", lookup)
    if external_id:
        logger.warning(f"[{scene['id']}] {stage.value} job {external_id} already in flight, not resubmitting")
    return external_id
