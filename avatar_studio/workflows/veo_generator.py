"""
High-priority background, second half: background image → Veo operation →
render job → Veo polling loop.
"""

import logging

from .. import events
from ..errors import NonRetriableError
from ..models import Stage
from .common import fetch_scene, find_in_flight_job, skip_if_completed, stage_failure_handler
from .veo_polling import VEO_POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


def _source_image_url(store, scene: dict, data: dict) -> str:
    if data.get("image_url"):
        return data["image_url"]
    asset_id = data.get("image_asset_id") or scene.get("background_asset_id")
    if not asset_id:
        raise NonRetriableError(f"Scene {scene['id']} has no background image for video generation")
    return store.get_asset(asset_id).url


def generate_veo_video(ctx, event):
    deps = ctx.deps
    store = deps.store
    scene_id = ctx.data["scene_id"]

    scene = fetch_scene(ctx, scene_id)
    if skip_if_completed(ctx, scene, Stage.BACKGROUND, events.BACKGROUND_COMPLETED):
        return {"skipped": True, "scene_id": scene_id}
    in_flight = find_in_flight_job(ctx, scene, Stage.BACKGROUND, deps.video_renderer.provider)
    if in_flight:
        return {"skipped": True, "scene_id": scene_id, "operation_id": in_flight}

    image_url = ctx.run_step("resolve-source-image", lambda: _source_image_url(store, scene, ctx.data))
    prompt = scene.get("video_prompt") or scene.get("visual_description") or scene["script"]

    handle = ctx.run_step("start-veo-operation", lambda: deps.video_renderer.submit(
        image_url, prompt, scene.get("emotion"),
    ).model_dump(mode="json"))

    ctx.run_step("create-render-job", lambda: store.upsert_render_job(
        external_id=handle["external_id"],
        project_id=scene["project_id"],
        scene_id=scene_id,
        provider=handle["provider"],
        metadata={"source_image_url": image_url},
    ).model_dump(mode="json"))

    ctx.send_event("start-veo-polling", events.VEO_POLLING_REQUESTED, {
        "project_id": scene["project_id"],
        "scene_id": scene_id,
        "operation_id": handle["external_id"],
        "attempt": 1,
        "max_attempts": VEO_POLL_MAX_ATTEMPTS,
    })

    logger.info(f"[{scene_id}] Veo operation started: {handle['external_id']}")
    return {"success": True, "scene_id": scene_id, "operation_id": handle["external_id"]}


on_veo_failure = stage_failure_handler(Stage.BACKGROUND, events.BACKGROUND_COMPLETED)
