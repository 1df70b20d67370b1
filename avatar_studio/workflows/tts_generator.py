"""
TTS stage: scene script → MP3 in storage → audio asset → tts-completed.
"""

import logging

from .. import events, storage
from ..models import AssetKind, Stage, StageStatus
from .common import completion_data, fetch_scene, skip_if_completed, stage_failure_handler

logger = logging.getLogger(__name__)


def _synthesize_and_upload(deps, scene: dict) -> dict:
    result = deps.tts.submit(scene["script"])
    path = storage.audio_path(scene["project_id"], scene["scene_number"])
    url = deps.storage.upload(result.artifact.data, path, result.artifact.content_type)
    return {"url": url, "storage_path": path, "metadata": {"provider": deps.tts.provider, **result.metadata}}


def generate_tts(ctx, event):
    store = ctx.deps.store
    scene_id = ctx.data["scene_id"]

    scene = fetch_scene(ctx, scene_id)
    if skip_if_completed(ctx, scene, Stage.TTS, events.TTS_COMPLETED):
        return {"skipped": True, "scene_id": scene_id}

    ctx.run_step("update-tts-status-generating",
                 lambda: store.set_stage_status(scene_id, Stage.TTS, StageStatus.GENERATING))

    audio = ctx.run_step("generate-and-upload-audio", lambda: _synthesize_and_upload(ctx.deps, scene))

    asset = ctx.run_step("create-audio-asset", lambda: store.create_asset(
        project_id=scene["project_id"],
        scene_id=scene_id,
        kind=AssetKind.AUDIO,
        url=audio["url"],
        storage_path=audio["storage_path"],
        metadata=audio["metadata"],
    ).model_dump(mode="json"))

    ctx.run_step("update-scene-tts-completed", lambda: store.set_stage_status(
        scene_id, Stage.TTS, StageStatus.COMPLETED, audio_asset_id=asset["id"],
    ))

    ctx.send_event("notify-tts-completed", events.TTS_COMPLETED,
                   completion_data(scene, asset_id=asset["id"]))

    logger.info(f"[{scene_id}] TTS completed: {audio['url']}")
    return {"success": True, "scene_id": scene_id, "audio_url": audio["url"]}


on_tts_failure = stage_failure_handler(Stage.TTS, events.TTS_COMPLETED)
