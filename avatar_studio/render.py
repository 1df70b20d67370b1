"""
On-demand final render from the composition manifest.

Runs as a FastAPI background task, outside the workflow engine. Each scene
is the background (image or looped video) with the avatar video overlaid
bottom-right and the scene audio on top; scenes are concatenated in
manifest order and uploaded to projects/{id}/final/final_video.mp4.
"""

import os
import time
import logging
import tempfile

from moviepy import (
    AudioFileClip,
    CompositeVideoClip,
    ImageClip,
    VideoFileClip,
    concatenate_videoclips,
    vfx,
)

from . import metrics, storage
from .errors import NonRetriableError
from .models import AssetKind, ProjectStatus

logger = logging.getLogger(__name__)

OUTPUT_SIZE = (1280, 720)
OUTPUT_FPS = 24
AVATAR_HEIGHT_RATIO = 0.45
AVATAR_MARGIN = 24


def _fetch(url: str, directory: str, name: str) -> str:
    path = os.path.join(directory, name)
    with open(path, "wb") as f:
        f.write(storage.download_url(url))
    return path


def _scene_clip(entry: dict, directory: str, opened: list):
    n = entry["scene_number"]
    audio = AudioFileClip(_fetch(entry["audio_url"], directory, f"scene_{n}_audio.mp3"))
    avatar = VideoFileClip(_fetch(entry["avatar_url"], directory, f"scene_{n}_avatar.mp4"))
    opened += [audio, avatar]
    duration = max(audio.duration or 0, float(entry["duration"]))

    if entry["background_kind"] == "video":
        background = VideoFileClip(_fetch(entry["background_url"], directory, f"scene_{n}_background.mp4"),
                                   audio=False)
        opened.append(background)
        if background.duration < duration:
            background = background.with_effects([vfx.Loop(duration=duration)])
        else:
            background = background.subclipped(0, duration)
    else:
        background = ImageClip(_fetch(entry["background_url"], directory, f"scene_{n}_background.png"))
        background = background.with_duration(duration)
    background = background.resized(new_size=OUTPUT_SIZE)

    avatar_height = int(OUTPUT_SIZE[1] * AVATAR_HEIGHT_RATIO)
    avatar = avatar.without_audio().resized(height=avatar_height)
    if avatar.duration < duration:
        avatar = avatar.with_effects([vfx.Freeze(t="end", total_duration=duration)])
    x = OUTPUT_SIZE[0] - avatar.w - AVATAR_MARGIN
    y = OUTPUT_SIZE[1] - avatar.h - AVATAR_MARGIN
    avatar = avatar.with_position((x, y))

    return CompositeVideoClip([background, avatar], size=OUTPUT_SIZE).with_audio(audio).with_duration(duration)


def render_video(manifest: dict, output_path: str):
    """Compose every manifest scene into one MP4 at ``output_path``."""
    opened = []
    with tempfile.TemporaryDirectory(prefix="render-") as directory:
        try:
            clips = [_scene_clip(entry, directory, opened) for entry in manifest["scenes"]]
            final = concatenate_videoclips(clips, method="compose")
            opened.append(final)
            final.write_videofile(
                output_path,
                fps=OUTPUT_FPS,
                codec="libx264",
                audio_codec="aac",
                logger=None,
            )
        finally:
            for clip in opened:
                clip.close()


def render_project(services, project_id: str):
    """Background task: render, upload, record the final_video asset."""
    store = services.store
    started = time.time()
    try:
        project = store.get_project(project_id)
        manifest = project.metadata.get("composition")
        if not manifest or not manifest.get("scenes"):
            raise NonRetriableError(f"Project {project_id} has no composition manifest")

        logger.info(f"[{project_id}] rendering {len(manifest['scenes'])} scenes ({manifest['total_duration']}s)")
        with tempfile.TemporaryDirectory(prefix="final-") as directory:
            output = os.path.join(directory, "final_video.mp4")
            render_video(manifest, output)
            with open(output, "rb") as f:
                data = f.read()

        path = storage.final_video_path(project_id)
        url = services.storage.upload(data, path, "video/mp4")
        store.create_asset(
            project_id=project_id,
            kind=AssetKind.FINAL_VIDEO,
            url=url,
            storage_path=path,
            metadata={"total_duration": manifest["total_duration"], "scene_count": len(manifest["scenes"])},
        )
        store.set_project_status(project_id, ProjectStatus.RENDERED)
        metrics.inc_counter("renders.completed")
        metrics.record_latency("render", (time.time() - started) * 1000)
        logger.info(f"[{project_id}] final video rendered: {url}")

    except Exception as e:
        logger.error(f"[{project_id}] render failed: {e}", exc_info=True)
        metrics.inc_counter("renders.failed")
        metrics.record_error("render", type(e).__name__, str(e))
        store.set_project_status(project_id, ProjectStatus.FAILED, error_message=f"Render failed: {e}")
