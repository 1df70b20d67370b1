"""
D-ID completion webhook.

D-ID calls back when a talk finishes. The avatar polling loop checks the
same talk, so both paths are idempotent against each other:

  - done          → store the video, asset, scene avatar completed,
                    render job completed, emit avatar-completed
  - error/rejected → render job and scene avatar failed; no event (the next
                    poll attempt sees the failed job and reports it)
  - anything else → ignored
"""

import logging

from . import events, metrics, storage
from .did import FAILED_STATUSES, describe_error
from .models import AssetKind, DIDWebhookPayload, RenderJobStatus, Stage, StageStatus
from .workflows.common import completion_data

logger = logging.getLogger(__name__)


def handle_did_webhook(engine, services, payload: DIDWebhookPayload) -> dict:
    """Apply a D-ID callback. Raises NotFoundError for an unknown talk id."""
    store = services.store
    job = store.get_render_job(payload.id)
    metrics.inc_counter(f"webhooks.did.{payload.status}")

    if job.is_terminal:
        logger.info(f"D-ID webhook for {payload.id}: render job already {job.status.value}, ignoring")
        return {"status": "ignored", "reason": f"render job already {job.status.value}"}

    scene = store.get_scene(job.scene_id)

    if payload.status == "done":
        if not payload.result_url:
            message = "D-ID reported done without a result_url"
            store.update_render_job(payload.id, status=RenderJobStatus.FAILED, error_message=message)
            store.set_stage_status(scene.id, Stage.AVATAR, StageStatus.FAILED, error_message=message)
            return {"status": "failed", "error": message}

        if scene.avatar_status == StageStatus.COMPLETED:
            store.update_render_job(payload.id, status=RenderJobStatus.COMPLETED)
            logger.info(f"[{scene.id}] avatar already completed, webhook is a duplicate")
            return {"status": "duplicate"}

        path = storage.avatar_video_path(scene.project_id, scene.scene_number)
        url = services.storage.upload_from_url(payload.result_url, path, "video/mp4")
        asset = store.create_asset(
            project_id=scene.project_id,
            scene_id=scene.id,
            kind=AssetKind.AVATAR_VIDEO,
            url=url,
            storage_path=path,
            source_url=payload.result_url,
            metadata={"provider": job.provider, "external_id": payload.id, "via": "webhook"},
        )
        store.set_stage_status(scene.id, Stage.AVATAR, StageStatus.COMPLETED, avatar_asset_id=asset.id)
        store.update_render_job(payload.id, status=RenderJobStatus.COMPLETED, metadata={"result_url": url})
        engine.emit(events.AVATAR_COMPLETED, completion_data(scene.model_dump(mode="json"), asset_id=asset.id))

        logger.info(f"[{scene.id}] D-ID webhook stored avatar video: {url}")
        return {"status": "completed", "asset_id": asset.id}

    if payload.status in FAILED_STATUSES:
        message = describe_error(payload.error)
        store.update_render_job(payload.id, status=RenderJobStatus.FAILED, error_message=message)
        if scene.avatar_status != StageStatus.COMPLETED:
            store.set_stage_status(scene.id, Stage.AVATAR, StageStatus.FAILED, error_message=message)
        logger.error(f"[{scene.id}] D-ID talk {payload.id} {payload.status}: {message}")
        return {"status": "failed", "error": message}

    logger.info(f"D-ID webhook for {payload.id}: status '{payload.status}', nothing to do")
    return {"status": "ignored", "reason": f"status {payload.status}"}
