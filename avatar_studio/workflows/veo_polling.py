"""
Veo polling loop: first check after 30s (operations take a while to become
visible), then every 5s, up to 120 attempts.
"""

from .. import events, storage
from ..models import AssetKind, Stage
from .polling import PollingLoop, run_poll_attempt

VEO_POLL_FIRST_DELAY = 30
VEO_POLL_DELAY = 5
VEO_POLL_MAX_ATTEMPTS = 120


def _background_video_path(project_id: str, scene_number: int) -> str:
    return storage.background_path(project_id, scene_number, "mp4")


VEO_LOOP = PollingLoop(
    name="veo",
    stage=Stage.BACKGROUND,
    trigger=events.VEO_POLLING_REQUESTED,
    completed_event=events.BACKGROUND_COMPLETED,
    handle_key="operation_id",
    asset_kind=AssetKind.BACKGROUND_VIDEO,
    first_delay=VEO_POLL_FIRST_DELAY,
    delay=VEO_POLL_DELAY,
    max_attempts=VEO_POLL_MAX_ATTEMPTS,
    adapter=lambda deps: deps.video_renderer,
    storage_path=_background_video_path,
)


def poll_veo(ctx, event):
    return run_poll_attempt(ctx, VEO_LOOP)


on_veo_polling_failure = VEO_LOOP.failure_handler()
