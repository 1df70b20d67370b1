"""
Composition trigger: once every scene has all three stages completed, record
the ordered composition manifest on the project and move it to
``scenes_processed``. Rendering the final file happens on demand (render.py).
"""

import logging

from ..errors import NonRetriableError, SceneNotReadyError
from ..models import AssetKind, ProjectStatus

logger = logging.getLogger(__name__)


def build_composition_manifest(project_id: str, scenes: list, assets: dict) -> dict:
    """
    Ordered manifest for ``scenes`` (Scene models sorted by position).

    Raises SceneNotReadyError naming every scene with an open stage, and
    NonRetriableError for a project without scenes.
    """
    if not scenes:
        raise NonRetriableError(f"Project {project_id} has no scenes to compose")

    incomplete = [
        {"scene_id": s.id, "scene_number": s.scene_number, "stages": s.stage_statuses()}
        for s in scenes if not s.is_complete
    ]
    if incomplete:
        raise SceneNotReadyError(project_id, incomplete)

    entries = []
    for scene in sorted(scenes, key=lambda s: s.position):
        missing = [
            column for column in ("audio_asset_id", "avatar_asset_id", "background_asset_id")
            if getattr(scene, column) not in assets
        ]
        if missing:
            raise NonRetriableError(
                f"Scene {scene.scene_number} ({scene.id}) is completed but missing {', '.join(missing)}"
            )
        background = assets[scene.background_asset_id]
        entries.append({
            "scene_id": scene.id,
            "scene_number": scene.scene_number,
            "position": scene.position,
            "duration": scene.duration,
            "audio_url": assets[scene.audio_asset_id].url,
            "avatar_url": assets[scene.avatar_asset_id].url,
            "background_url": background.url,
            "background_kind": "video" if background.kind == AssetKind.BACKGROUND_VIDEO else "image",
        })

    return {"scenes": entries, "total_duration": sum(e["duration"] for e in entries)}


def _load_manifest(store, project_id: str) -> dict:
    scenes = store.list_scenes(project_id)
    asset_ids = []
    for scene in scenes:
        asset_ids += [scene.audio_asset_id, scene.avatar_asset_id, scene.background_asset_id]
    return build_composition_manifest(project_id, scenes, store.get_assets(asset_ids))


def compose_video(ctx, event):
    store = ctx.deps.store
    project_id = ctx.data["project_id"]

    project = ctx.run_step("fetch-project", lambda: store.get_project(project_id).model_dump(mode="json"))
    if project.get("deleted_at"):
        logger.warning(f"[{project_id}] project deleted, skipping composition")
        return {"skipped": True, "project_id": project_id}

    manifest = ctx.run_step("check-all-scenes-ready", lambda: _load_manifest(store, project_id))

    ctx.run_step("save-composition-manifest",
                 lambda: store.merge_project_metadata(project_id, {"composition": manifest}))
    ctx.run_step("update-project-status", lambda: store.set_project_status(
        project_id, ProjectStatus.SCENES_PROCESSED,
    ).status.value)

    logger.info(
        f"[{project_id}] all {len(manifest['scenes'])} scenes ready "
        f"({manifest['total_duration']}s), project scenes_processed"
    )
    return {"success": True, "project_id": project_id, "scene_count": len(manifest["scenes"])}


def on_compose_failure(ctx, error: BaseException):
    ctx.deps.store.set_project_status(ctx.data["project_id"], ProjectStatus.FAILED, error_message=str(error))
