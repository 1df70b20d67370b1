"""
Avatar stage: audio asset + portrait → D-ID talk → render job → polling loop.

The stage stays ``generating`` here; the avatar polling loop (or the D-ID
webhook) flips it to completed.
"""

import logging

from .. import events
from ..did import DID_PRESET_AVATAR_URL
from ..errors import NonRetriableError
from ..models import AssetKind, AvatarDesignMode, Stage, StageStatus
from .common import fetch_scene, find_in_flight_job, skip_if_completed, stage_failure_handler
from .avatar_polling import AVATAR_POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


def _resolve_inputs(store, scene: dict) -> dict:
    if not scene.get("audio_asset_id"):
        raise NonRetriableError(f"Scene {scene['id']} has no audio asset; TTS must complete first")
    audio = store.get_asset(scene["audio_asset_id"])

    project = store.get_project(scene["project_id"])
    avatar_url = DID_PRESET_AVATAR_URL
    source = "preset"
    if project.avatar_design_mode == AvatarDesignMode.CUSTOM and project.avatar_design_status == StageStatus.COMPLETED:
        design = store.find_asset(project.id, AssetKind.AVATAR_DESIGN)
        if design is not None:
            avatar_url = design.url
            source = "custom"
        else:
            logger.warning(f"[{project.id}] avatar design marked completed but no asset found, using preset")

    return {"audio_url": audio.url, "avatar_url": avatar_url, "avatar_source": source}


def generate_avatar(ctx, event):
    deps = ctx.deps
    store = deps.store
    scene_id = ctx.data["scene_id"]

    scene = fetch_scene(ctx, scene_id)
    if skip_if_completed(ctx, scene, Stage.AVATAR, events.AVATAR_COMPLETED):
        return {"skipped": True, "scene_id": scene_id}
    in_flight = find_in_flight_job(ctx, scene, Stage.AVATAR, deps.avatar_renderer.provider)
    if in_flight:
        return {"skipped": True, "scene_id": scene_id, "external_job_id": in_flight}

    inputs = ctx.run_step("resolve-avatar-inputs", lambda: _resolve_inputs(store, scene))

    ctx.run_step("update-avatar-status-generating",
                 lambda: store.set_stage_status(scene_id, Stage.AVATAR, StageStatus.GENERATING))

    handle = ctx.run_step("create-did-talk", lambda: deps.avatar_renderer.submit(
        inputs["avatar_url"], inputs["audio_url"], deps.did_webhook_url,
    ).model_dump(mode="json"))

    ctx.run_step("create-render-job", lambda: store.upsert_render_job(
        external_id=handle["external_id"],
        project_id=scene["project_id"],
        scene_id=scene_id,
        provider=handle["provider"],
        metadata={"avatar_source": inputs["avatar_source"], "avatar_url": inputs["avatar_url"]},
    ).model_dump(mode="json"))

    ctx.send_event("start-avatar-polling", events.AVATAR_POLLING_REQUESTED, {
        "project_id": scene["project_id"],
        "scene_id": scene_id,
        "external_job_id": handle["external_id"],
        "attempt": 1,
        "max_attempts": AVATAR_POLL_MAX_ATTEMPTS,
    })

    logger.info(f"[{scene_id}] D-ID talk {handle['external_id']} submitted ({inputs['avatar_source']} avatar)")
    return {"success": True, "scene_id": scene_id, "external_job_id": handle["external_id"]}


on_avatar_failure = stage_failure_handler(Stage.AVATAR, events.AVATAR_COMPLETED)
