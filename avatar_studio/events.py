"""
Event names on the workflow bus. Every payload carries ``project_id``.
"""

DOCUMENT_VALIDATE_REQUESTED = "document-validate-requested"
SCRIPT_GENERATION_REQUESTED = "script-generation-requested"
SCENE_PROCESS_REQUESTED = "scene-process-requested"

TTS_REQUESTED = "tts-requested"
TTS_COMPLETED = "tts-completed"
AVATAR_REQUESTED = "avatar-requested"
AVATAR_COMPLETED = "avatar-completed"
BACKGROUND_REQUESTED = "background-requested"
BACKGROUND_COMPLETED = "background-completed"

VEO_GENERATION_REQUESTED = "veo-generation-requested"
AVATAR_POLLING_REQUESTED = "avatar-polling-requested"
VEO_POLLING_REQUESTED = "veo-polling-requested"

AVATAR_DESIGN_REQUESTED = "avatar-design-generation-requested"
AVATAR_DESIGN_COMPLETED = "avatar-design-completed"

VIDEO_COMPOSE_REQUESTED = "video-compose-requested"

ALL_EVENTS = frozenset({
    DOCUMENT_VALIDATE_REQUESTED,
    SCRIPT_GENERATION_REQUESTED,
    SCENE_PROCESS_REQUESTED,
    TTS_REQUESTED,
    TTS_COMPLETED,
    AVATAR_REQUESTED,
    AVATAR_COMPLETED,
    BACKGROUND_REQUESTED,
    BACKGROUND_COMPLETED,
    VEO_GENERATION_REQUESTED,
    AVATAR_POLLING_REQUESTED,
    VEO_POLLING_REQUESTED,
    AVATAR_DESIGN_REQUESTED,
    AVATAR_DESIGN_COMPLETED,
    VIDEO_COMPOSE_REQUESTED,
})
