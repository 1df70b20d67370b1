"""
Background stage, by scene priority:

    low    → Pillow gradient placeholder (no provider call) → completed
    medium → generated image → completed
    high   → generated image → veo-generation-requested (stage stays generating
             until the Veo polling loop stores the video)
"""

import logging
from io import BytesIO

from PIL import Image, ImageDraw

from .. import events, storage
from ..models import AssetKind, Priority, Stage, StageStatus
from .common import completion_data, fetch_scene, skip_if_completed, stage_failure_handler

logger = logging.getLogger(__name__)

BACKGROUND_SIZE = (1280, 720)

# top / bottom colors per emotion
GRADIENTS = {
    "professional": ((24, 44, 74), (112, 134, 160)),
    "energetic": ((214, 92, 32), (250, 204, 80)),
    "calm": ((58, 110, 140), (178, 220, 210)),
    "innovative": ((40, 24, 92), (64, 140, 220)),
    "neutral": ((70, 70, 76), (190, 190, 196)),
}


def render_gradient_background(emotion: str | None, size: tuple[int, int] = BACKGROUND_SIZE) -> bytes:
    """Vertical two-color gradient PNG."""
    top, bottom = GRADIENTS.get((emotion or "").lower(), GRADIENTS["neutral"])
    width, height = size
    image = Image.new("RGB", size)
    draw = ImageDraw.Draw(image)
    for y in range(height):
        t = y / max(1, height - 1)
        color = tuple(int(top[i] + (bottom[i] - top[i]) * t) for i in range(3))
        draw.line([(0, y), (width, y)], fill=color)

    output = BytesIO()
    image.save(output, format="PNG")
    return output.getvalue()


def _image_prompt(scene: dict) -> str:
    return scene.get("image_prompt") or scene.get("visual_description") or scene["script"]


def _upload_placeholder(deps, scene: dict) -> dict:
    path = storage.background_path(scene["project_id"], scene["scene_number"], "png")
    url = deps.storage.upload(render_gradient_background(scene.get("emotion")), path, "image/png")
    return {"url": url, "storage_path": path, "metadata": {"provider": "placeholder"}}


def _generate_and_upload(deps, scene: dict) -> dict:
    result = deps.image_generator.submit(_image_prompt(scene), scene.get("emotion"))
    path = storage.background_path(scene["project_id"], scene["scene_number"], "png")
    url = deps.storage.upload(result.artifact.data, path, result.artifact.content_type)
    return {"url": url, "storage_path": path,
            "metadata": {"provider": deps.image_generator.provider, "model": result.metadata.get("model")}}


def generate_background(ctx, event):
    deps = ctx.deps
    store = deps.store
    scene_id = ctx.data["scene_id"]

    scene = fetch_scene(ctx, scene_id)
    if skip_if_completed(ctx, scene, Stage.BACKGROUND, events.BACKGROUND_COMPLETED):
        return {"skipped": True, "scene_id": scene_id}

    priority = Priority(scene.get("priority") or Priority.LOW)

    ctx.run_step("update-background-status-generating",
                 lambda: store.set_stage_status(scene_id, Stage.BACKGROUND, StageStatus.GENERATING))

    if priority == Priority.LOW:
        image = ctx.run_step("render-placeholder-background", lambda: _upload_placeholder(deps, scene))
    else:
        image = ctx.run_step("generate-background-image", lambda: _generate_and_upload(deps, scene))

    asset = ctx.run_step("create-background-image-asset", lambda: store.create_asset(
        project_id=scene["project_id"],
        scene_id=scene_id,
        kind=AssetKind.BACKGROUND_IMAGE,
        url=image["url"],
        storage_path=image["storage_path"],
        metadata={**image["metadata"], "priority": priority.value},
    ).model_dump(mode="json"))

    if priority == Priority.HIGH:
        ctx.run_step("link-background-image",
                     lambda: store.update_scene(scene_id, background_asset_id=asset["id"]))
        ctx.send_event("request-veo-video", events.VEO_GENERATION_REQUESTED, {
            "project_id": scene["project_id"],
            "scene_id": scene_id,
            "image_asset_id": asset["id"],
            "image_url": image["url"],
        })
        logger.info(f"[{scene_id}] background image ready, Veo video requested")
        return {"success": True, "scene_id": scene_id, "priority": priority.value, "video_requested": True}

    ctx.run_step("update-scene-background-completed", lambda: store.set_stage_status(
        scene_id, Stage.BACKGROUND, StageStatus.COMPLETED, background_asset_id=asset["id"],
    ))
    ctx.send_event("notify-background-completed", events.BACKGROUND_COMPLETED,
                   completion_data(scene, asset_id=asset["id"]))

    logger.info(f"[{scene_id}] background completed ({priority.value}): {image['url']}")
    return {"success": True, "scene_id": scene_id, "priority": priority.value}


on_background_failure = stage_failure_handler(Stage.BACKGROUND, events.BACKGROUND_COMPLETED)
