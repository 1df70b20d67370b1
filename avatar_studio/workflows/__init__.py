"""
Scene workflow functions

  Intake      — document validation → script generation → scene rows
  Per scene   — orchestrator → TTS → avatar (D-ID + polling) → background
                (placeholder | image | image + Veo + polling)
  Per project — custom avatar design, composition manifest
"""

from .. import events
from ..engine import WorkflowFunction
from .document_validator import validate_document, on_document_failure
from .script_generator import generate_script, on_script_failure
from .scene_processor import process_scene, on_scene_failure
from .tts_generator import generate_tts, on_tts_failure
from .avatar_generator import generate_avatar, on_avatar_failure
from .avatar_polling import poll_avatar, on_avatar_polling_failure
from .background_generator import generate_background, on_background_failure
from .veo_generator import generate_veo_video, on_veo_failure
from .veo_polling import poll_veo, on_veo_polling_failure
from .avatar_design import generate_avatar_design, on_avatar_design_failure
from .video_compositor import compose_video, on_compose_failure

POLLING_CONCURRENCY = 5


def build_functions() -> list[WorkflowFunction]:
    """Every workflow function, bound to its trigger event."""
    return [
        WorkflowFunction(
            id="document-validator",
            trigger=events.DOCUMENT_VALIDATE_REQUESTED,
            handler=validate_document,
            retries=2,
            on_failure=on_document_failure,
        ),
        WorkflowFunction(
            id="script-generator",
            trigger=events.SCRIPT_GENERATION_REQUESTED,
            handler=generate_script,
            retries=2,
            on_failure=on_script_failure,
        ),
        WorkflowFunction(
            id="scene-processor",
            trigger=events.SCENE_PROCESS_REQUESTED,
            handler=process_scene,
            retries=3,
            idempotency_key="scene_id",
            on_failure=on_scene_failure,
        ),
        WorkflowFunction(
            id="tts-generator",
            trigger=events.TTS_REQUESTED,
            handler=generate_tts,
            retries=3,
            concurrency=3,
            on_failure=on_tts_failure,
        ),
        WorkflowFunction(
            id="avatar-generator",
            trigger=events.AVATAR_REQUESTED,
            handler=generate_avatar,
            retries=3,
            concurrency=2,
            on_failure=on_avatar_failure,
        ),
        WorkflowFunction(
            id="avatar-polling",
            trigger=events.AVATAR_POLLING_REQUESTED,
            handler=poll_avatar,
            retries=2,
            concurrency=POLLING_CONCURRENCY,
            on_failure=on_avatar_polling_failure,
        ),
        WorkflowFunction(
            id="background-generator",
            trigger=events.BACKGROUND_REQUESTED,
            handler=generate_background,
            retries=3,
            concurrency=3,
            on_failure=on_background_failure,
        ),
        WorkflowFunction(
            id="veo-generator",
            trigger=events.VEO_GENERATION_REQUESTED,
            handler=generate_veo_video,
            retries=2,
            concurrency=2,
            on_failure=on_veo_failure,
        ),
        WorkflowFunction(
            id="veo-polling",
            trigger=events.VEO_POLLING_REQUESTED,
            handler=poll_veo,
            retries=2,
            concurrency=POLLING_CONCURRENCY,
            on_failure=on_veo_polling_failure,
        ),
        WorkflowFunction(
            id="avatar-design-generator",
            trigger=events.AVATAR_DESIGN_REQUESTED,
            handler=generate_avatar_design,
            retries=2,
            concurrency=2,
            on_failure=on_avatar_design_failure,
        ),
        WorkflowFunction(
            id="video-compositor",
            trigger=events.VIDEO_COMPOSE_REQUESTED,
            handler=compose_video,
            retries=3,
            on_failure=on_compose_failure,
        ),
    ]


__all__ = ["build_functions"]
