"""
Custom avatar portrait for a project (custom avatar mode only).

Quota-exceeded and model-not-found errors degrade to the preset avatar:
avatar_design_status=failed, metadata.fallback_to_preset=true, and
avatar-design-completed is still emitted (with fallback_to_preset) so a
waiting scene orchestrator resumes at once. Other errors are retried; the
final failure takes the same fallback path.
"""

import logging
from datetime import datetime, timezone

from .. import events, storage
from ..errors import NonRetriableError, ProviderError, is_quota_or_not_found
from ..models import AssetKind, AvatarDesignMode, StageStatus

logger = logging.getLogger(__name__)


def _generate_and_upload(deps, project: dict) -> dict:
    try:
        result = deps.image_generator.generate_avatar_design(project["avatar_design_settings"])
    except ProviderError as e:
        reason = is_quota_or_not_found(e)
        if reason is None:
            raise
        logger.warning(f"[{project['id']}] avatar design unavailable ({reason}), falling back to preset: {e}")
        return {"fallback": True, "reason": reason, "details": str(e)}

    path = storage.avatar_design_path(project["id"])
    url = deps.storage.upload(result.artifact.data, path, result.artifact.content_type)
    return {"fallback": False, "url": url, "storage_path": path, "model": result.metadata.get("model")}


def mark_fallback(store, project_id: str, reason: str, details: str):
    store.update_project(project_id, avatar_design_status=StageStatus.FAILED)
    store.merge_project_metadata(project_id, {
        "fallback_to_preset": True,
        "avatar_design_error": {
            "reason": reason,
            "details": details[:500],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    })


def generate_avatar_design(ctx, event):
    deps = ctx.deps
    store = deps.store
    project_id = ctx.data["project_id"]

    project = ctx.run_step("fetch-project", lambda: store.get_project(project_id).model_dump(mode="json"))
    if project["avatar_design_mode"] != AvatarDesignMode.CUSTOM.value:
        raise NonRetriableError(f"Project {project_id} is not in custom avatar mode")
    if not project.get("avatar_design_settings"):
        raise NonRetriableError(f"Project {project_id} has no avatar design settings")

    if project.get("avatar_design_status") == StageStatus.COMPLETED.value:
        ctx.send_event("notify-avatar-design-already-completed", events.AVATAR_DESIGN_COMPLETED,
                       {"project_id": project_id, "status": "completed", "fallback_to_preset": False})
        return {"skipped": True, "project_id": project_id}

    ctx.run_step("update-avatar-design-status-generating",
                 lambda: store.update_project(project_id, avatar_design_status=StageStatus.GENERATING))

    outcome = ctx.run_step("generate-and-upload-avatar-image", lambda: _generate_and_upload(deps, project))

    if outcome["fallback"]:
        ctx.run_step("mark-fallback-to-preset",
                     lambda: mark_fallback(store, project_id, outcome["reason"], outcome["details"]))
        ctx.send_event("notify-avatar-design-fallback", events.AVATAR_DESIGN_COMPLETED, {
            "project_id": project_id,
            "status": "failed",
            "fallback_to_preset": True,
            "reason": outcome["reason"],
        })
        return {"success": False, "project_id": project_id, "fallback_to_preset": True, "reason": outcome["reason"]}

    asset = ctx.run_step("create-avatar-design-asset", lambda: store.create_asset(
        project_id=project_id,
        kind=AssetKind.AVATAR_DESIGN,
        url=outcome["url"],
        storage_path=outcome["storage_path"],
        metadata={"provider": deps.image_generator.provider, "model": outcome.get("model")},
    ).model_dump(mode="json"))

    ctx.run_step("update-avatar-design-status-completed",
                 lambda: store.update_project(project_id, avatar_design_status=StageStatus.COMPLETED))

    ctx.send_event("notify-avatar-design-completed", events.AVATAR_DESIGN_COMPLETED, {
        "project_id": project_id,
        "status": "completed",
        "fallback_to_preset": False,
        "asset_id": asset["id"],
    })

    logger.info(f"[{project_id}] avatar design completed: {outcome['url']}")
    return {"success": True, "project_id": project_id, "url": outcome["url"]}


def on_avatar_design_failure(ctx, error: BaseException):
    project_id = ctx.data["project_id"]
    store = ctx.deps.store
    mark_fallback(store, project_id, type(error).__name__, str(error))
    ctx.engine.emit(events.AVATAR_DESIGN_COMPLETED, {
        "project_id": project_id,
        "status": "failed",
        "fallback_to_preset": True,
        "reason": str(error)[:200],
    })
    logger.error(f"[{project_id}] avatar design failed, preset avatar will be used: {error}")
