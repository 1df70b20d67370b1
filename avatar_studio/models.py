"""
Pydantic models and enums for projects, scenes, assets and render jobs.
"""

import math
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


# ── Project status state machine ─────────────────────────────────────────────

class ProjectStatus(str, Enum):
    DRAFT = "draft"
    DOCUMENT_UPLOADED = "document_uploaded"
    SCRIPT_GENERATED = "script_generated"
    SCENES_PROCESSED = "scenes_processed"
    RENDERING = "rendering"
    RENDERED = "rendered"
    FAILED = "failed"


# failed is reachable from everywhere and leads nowhere
PROJECT_TRANSITIONS: dict[ProjectStatus, set[ProjectStatus]] = {
    ProjectStatus.DRAFT: {ProjectStatus.DOCUMENT_UPLOADED},
    ProjectStatus.DOCUMENT_UPLOADED: {ProjectStatus.SCRIPT_GENERATED},
    ProjectStatus.SCRIPT_GENERATED: {ProjectStatus.SCENES_PROCESSED},
    ProjectStatus.SCENES_PROCESSED: {ProjectStatus.RENDERING},
    ProjectStatus.RENDERING: {ProjectStatus.RENDERED},
    ProjectStatus.RENDERED: set(),
    ProjectStatus.FAILED: set(),
}


def can_transition(current: ProjectStatus | str, target: ProjectStatus | str) -> bool:
    """Same-state moves are no-ops and always allowed, except out of failed."""
    current = ProjectStatus(current)
    target = ProjectStatus(target)
    if current == ProjectStatus.FAILED:
        return target == ProjectStatus.FAILED
    if current == target or target == ProjectStatus.FAILED:
        return True
    return target in PROJECT_TRANSITIONS[current]


class StageStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(str, Enum):
    TTS = "tts"
    AVATAR = "avatar"
    BACKGROUND = "background"

    @property
    def status_column(self) -> str:
        return f"{self.value}_status"

    @property
    def asset_column(self) -> str:
        return {
            Stage.TTS: "audio_asset_id",
            Stage.AVATAR: "avatar_asset_id",
            Stage.BACKGROUND: "background_asset_id",
        }[self]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Emotion(str, Enum):
    PROFESSIONAL = "professional"
    ENERGETIC = "energetic"
    CALM = "calm"
    INNOVATIVE = "innovative"
    NEUTRAL = "neutral"


class AvatarDesignMode(str, Enum):
    PRESET = "preset"
    CUSTOM = "custom"


class AssetKind(str, Enum):
    AUDIO = "audio"
    AVATAR_DESIGN = "avatar_design"
    AVATAR_VIDEO = "avatar_video"
    BACKGROUND_IMAGE = "background_image"
    BACKGROUND_VIDEO = "background_video"
    FINAL_VIDEO = "final_video"


class RenderJobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSED = "processed"
    FAILED = "failed"


class Relation(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


ALLOWED_DURATIONS = (30, 60, 180)
SCENE_DURATION_SECONDS = 8


def scene_count_for(duration: int) -> int:
    """Scenes needed to cover ``duration`` seconds (a 30s video gets 4)."""
    return max(1, math.ceil(duration / SCENE_DURATION_SECONDS))


# ── Rows ─────────────────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    user_id: str
    title: str = ""
    duration: int = 30
    status: ProjectStatus = ProjectStatus.DRAFT
    avatar_design_mode: AvatarDesignMode = AvatarDesignMode.PRESET
    avatar_design_status: Optional[StageStatus] = None
    avatar_design_settings: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def scene_count(self) -> int:
        return scene_count_for(self.duration)

    @property
    def needs_avatar_design(self) -> bool:
        return (
            self.avatar_design_mode == AvatarDesignMode.CUSTOM
            and self.avatar_design_status != StageStatus.COMPLETED
        )


class Document(BaseModel):
    id: str
    project_id: str
    storage_path: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


class Scene(BaseModel):
    id: str
    project_id: str
    scene_number: int
    position: int
    script: str
    duration: int = SCENE_DURATION_SECONDS
    visual_description: Optional[str] = None
    image_prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    priority: Priority = Priority.HIGH
    emotion: Emotion = Emotion.NEUTRAL
    tts_status: StageStatus = StageStatus.PENDING
    avatar_status: StageStatus = StageStatus.PENDING
    background_status: StageStatus = StageStatus.PENDING
    audio_asset_id: Optional[str] = None
    avatar_asset_id: Optional[str] = None
    background_asset_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def stage_status(self, stage: Stage | str) -> StageStatus:
        return getattr(self, Stage(stage).status_column)

    def stage_statuses(self) -> dict[str, str]:
        return {stage.value: self.stage_status(stage).value for stage in Stage}

    @property
    def is_complete(self) -> bool:
        return all(self.stage_status(stage) == StageStatus.COMPLETED for stage in Stage)


class Asset(BaseModel):
    id: str
    project_id: str
    scene_id: Optional[str] = None
    kind: AssetKind
    url: str
    storage_path: Optional[str] = None
    source_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


class RenderJob(BaseModel):
    id: str
    project_id: str
    scene_id: Optional[str] = None
    external_id: str
    provider: str
    status: RenderJobStatus = RenderJobStatus.PROCESSING
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != RenderJobStatus.PROCESSING


# ── API Request / Response Models ────────────────────────────────────────────

class EventIn(BaseModel):
    """Internal event ingestion (POST /events)."""
    name: str
    data: dict[str, Any] = Field(default_factory=dict)


class DIDWebhookPayload(BaseModel):
    id: str
    status: str
    result_url: Optional[str] = None
    error: Optional[Any] = None


class ActionResponse(BaseModel):
    status: str = "ok"
    project_id: str
    event_ids: list[str] = Field(default_factory=list)
    message: Optional[str] = None


class RunResponse(BaseModel):
    id: str
    function_id: str
    status: str
    attempt: int = 0
    event: dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    steps: list[str] = Field(default_factory=list)
