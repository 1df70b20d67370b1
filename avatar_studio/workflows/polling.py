"""
Self-chaining polling loop for long-running provider jobs.

One invocation = one status check:

    sleep → render job still processing? → poll → pending:   re-emit with attempt + 1
                                                  succeeded: store artifact, asset,
                                                             stage completed, notify
                                                  failed:    NonRetriableError

Terminal failures (provider error, attempt budget exhausted) raise
NonRetriableError; the loop's on_failure hook marks the scene stage and the
render job failed and tells the orchestrator.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import NonRetriableError
from ..jobs import JobHandle, PollState
from ..models import AssetKind, RenderJobStatus, Stage, StageStatus
from .common import completion_data, fetch_scene, stage_failure_handler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollingLoop:
    name: str
    stage: Stage
    trigger: str
    completed_event: str
    handle_key: str
    asset_kind: AssetKind
    first_delay: float
    delay: float
    max_attempts: int
    adapter: Callable[[Any], Any]
    storage_path: Callable[[str, int], str]

    def failure_handler(self):
        return stage_failure_handler(self.stage, self.completed_event, render_job_key=self.handle_key)


def _check_and_store(deps, loop: PollingLoop, scene: dict, job: dict) -> dict:
    result = loop.adapter(deps).poll(JobHandle(provider=job["provider"], external_id=job["external_id"]))

    if result.state == PollState.PENDING:
        return {"state": PollState.PENDING.value}
    if result.state == PollState.FAILED:
        return {"state": PollState.FAILED.value, "error": result.error}

    artifact = result.artifact
    path = loop.storage_path(scene["project_id"], scene["scene_number"])
    if artifact.kind == "url":
        url = deps.storage.upload_from_url(artifact.url, path, artifact.content_type)
    else:
        url = deps.storage.upload(artifact.data, path, artifact.content_type)
    return {
        "state": PollState.SUCCEEDED.value,
        "url": url,
        "storage_path": path,
        "source_url": artifact.url,
    }


def run_poll_attempt(ctx, loop: PollingLoop) -> dict:
    store = ctx.deps.store
    data = ctx.data
    scene_id = data["scene_id"]
    external_id = data[loop.handle_key]
    attempt = int(data.get("attempt", 1))
    max_attempts = int(data.get("max_attempts", loop.max_attempts))

    ctx.sleep("wait-before-check", loop.first_delay if attempt == 1 else loop.delay)

    job = ctx.run_step("fetch-render-job", lambda: store.get_render_job(external_id).model_dump(mode="json"))
    scene = fetch_scene(ctx, scene_id)

    if job["status"] != RenderJobStatus.PROCESSING.value:
        # Finished by the webhook. Its failure path stays silent, so report it here.
        logger.info(f"[{scene_id}] {loop.name} job {external_id} already {job['status']}, stopping")
        if job["status"] == RenderJobStatus.FAILED.value:
            ctx.send_event(f"notify-{loop.stage.value}-failed", loop.completed_event, completion_data(
                scene, status=StageStatus.FAILED.value, error=job.get("error_message") or "Render job failed",
            ))
        return {"status": job["status"], "attempt": attempt, "stopped": True}

    outcome = ctx.run_step("check-status", lambda: _check_and_store(ctx.deps, loop, scene, job))
    state = outcome["state"]

    ctx.run_step("record-poll-attempt", lambda: store.update_render_job(
        external_id, metadata={"attempt": attempt, "last_state": state},
    ))

    if state == PollState.FAILED.value:
        raise NonRetriableError(f"{job['provider']} job {external_id} failed: {outcome['error']}")

    if state == PollState.PENDING.value:
        if attempt >= max_attempts:
            raise NonRetriableError(
                f"{job['provider']} job {external_id} timed out after {max_attempts} attempts"
            )
        ctx.send_event("trigger-next-poll", loop.trigger, {**data, "attempt": attempt + 1})
        logger.info(f"[{scene_id}] {loop.name} job {external_id} pending ({attempt}/{max_attempts})")
        return {"status": "pending", "attempt": attempt}

    asset = ctx.run_step("create-asset", lambda: store.create_asset(
        project_id=scene["project_id"],
        scene_id=scene_id,
        kind=loop.asset_kind,
        url=outcome["url"],
        storage_path=outcome["storage_path"],
        source_url=outcome["source_url"],
        metadata={"provider": job["provider"], "external_id": external_id},
    ).model_dump(mode="json"))

    ctx.run_step("update-scene-completed", lambda: store.set_stage_status(
        scene_id, loop.stage, StageStatus.COMPLETED, **{loop.stage.asset_column: asset["id"]},
    ))
    ctx.run_step("update-render-job-completed", lambda: store.update_render_job(
        external_id, status=RenderJobStatus.COMPLETED,
        metadata={"result_url": outcome["url"], "completed_attempt": attempt},
    ))

    ctx.send_event(f"notify-{loop.stage.value}-completed", loop.completed_event,
                   completion_data(scene, asset_id=asset["id"]))

    logger.info(f"[{scene_id}] {loop.name} job {external_id} completed on attempt {attempt}: {outcome['url']}")
    return {"status": "completed", "attempt": attempt, "url": outcome["url"]}
