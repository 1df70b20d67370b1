"""
Avatar polling loop: checks a D-ID talk every 5s, up to 20 attempts.
"""

from .. import events, storage
from ..models import AssetKind, Stage
from .polling import PollingLoop, run_poll_attempt

AVATAR_POLL_DELAY = 5
AVATAR_POLL_MAX_ATTEMPTS = 20

AVATAR_LOOP = PollingLoop(
    name="avatar",
    stage=Stage.AVATAR,
    trigger=events.AVATAR_POLLING_REQUESTED,
    completed_event=events.AVATAR_COMPLETED,
    handle_key="external_job_id",
    asset_kind=AssetKind.AVATAR_VIDEO,
    first_delay=AVATAR_POLL_DELAY,
    delay=AVATAR_POLL_DELAY,
    max_attempts=AVATAR_POLL_MAX_ATTEMPTS,
    adapter=lambda deps: deps.avatar_renderer,
    storage_path=storage.avatar_video_path,
)


def poll_avatar(ctx, event):
    return run_poll_attempt(ctx, AVATAR_LOOP)


on_avatar_polling_failure = AVATAR_LOOP.failure_handler()
