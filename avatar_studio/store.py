"""
Project store: projects, documents, scenes, assets and render jobs.

All reads and writes go through the Supabase service-role client. Rows are
returned as pydantic models from avatar_studio.models.

Idempotency helpers:
  - create_asset() upserts scene assets on (scene_id, kind); a second call
    returns the existing row instead of creating another
  - upsert_render_job() keeps exactly one row per external job id
  - set_project_status() refuses moves the state machine does not allow
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from .errors import InvalidTransitionError, NotFoundError
from .models import (
    Asset,
    AssetKind,
    Document,
    Project,
    ProjectStatus,
    RenderJob,
    RenderJobStatus,
    Scene,
    Stage,
    StageStatus,
    can_transition,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _value(v: Any) -> Any:
    return v.value if hasattr(v, "value") else v


class ProjectStore:
    def __init__(self, client):
        self.client = client

    # ── Internal helpers ─────────────────────────────────────────────────────

    def _one(self, table: str, **filters) -> dict:
        query = self.client.table(table).select("*")
        for column, value in filters.items():
            query = query.eq(column, value)
        rows = query.limit(1).execute().data
        if not rows:
            where = ", ".join(f"{k}={v}" for k, v in filters.items())
            raise NotFoundError(f"{table} row not found ({where})")
        return rows[0]

    def _update(self, table: str, row_id: str, fields: dict, key: str = "id"):
        payload = {k: _value(v) for k, v in fields.items()}
        payload["updated_at"] = _now_iso()
        self.client.table(table).update(payload).eq(key, row_id).execute()

    # ── Projects ─────────────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Project:
        return Project.model_validate(self._one("projects", id=project_id))

    def update_project(self, project_id: str, **fields):
        self._update("projects", project_id, fields)

    def set_project_status(
        self,
        project_id: str,
        status: ProjectStatus,
        error_message: Optional[str] = None,
    ) -> Project:
        status = ProjectStatus(status)
        project = self.get_project(project_id)
        if not can_transition(project.status, status):
            raise InvalidTransitionError(project_id, project.status.value, status.value)

        fields: dict[str, Any] = {"status": status}
        if error_message is not None:
            fields["error_message"] = error_message[:1000]
        self.update_project(project_id, **fields)
        logger.info(f"[{project_id}] status {project.status.value} → {status.value}")
        return project.model_copy(update=fields)

    def merge_project_metadata(self, project_id: str, patch: dict) -> dict:
        metadata = {**self.get_project(project_id).metadata, **patch}
        self.update_project(project_id, metadata=metadata)
        return metadata

    # ── Documents ────────────────────────────────────────────────────────────

    def get_document(self, document_id: str) -> Document:
        return Document.model_validate(self._one("documents", id=document_id))

    def get_latest_document(self, project_id: str) -> Document:
        rows = (
            self.client.table("documents")
            .select("*")
            .eq("project_id", project_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
            .data
        )
        if not rows:
            raise NotFoundError(f"No document uploaded for project {project_id}")
        return Document.model_validate(rows[0])

    def update_document(self, document_id: str, **fields):
        self._update("documents", document_id, fields)

    # ── Scenes ───────────────────────────────────────────────────────────────

    def get_scene(self, scene_id: str) -> Scene:
        return Scene.model_validate(self._one("scenes", id=scene_id))

    def list_scenes(self, project_id: str) -> list[Scene]:
        rows = (
            self.client.table("scenes")
            .select("*")
            .eq("project_id", project_id)
            .order("position")
            .execute()
            .data
        )
        return [Scene.model_validate(row) for row in rows or []]

    def create_scenes(self, project_id: str, scenes: list[dict]) -> list[Scene]:
        """Insert every scene in one statement so the set appears atomically."""
        now = _now_iso()
        rows = [
            {
                "id": str(uuid4()),
                "project_id": project_id,
                "tts_status": StageStatus.PENDING.value,
                "avatar_status": StageStatus.PENDING.value,
                "background_status": StageStatus.PENDING.value,
                "metadata": {},
                "created_at": now,
                "updated_at": now,
                **{k: _value(v) for k, v in scene.items()},
            }
            for scene in scenes
        ]
        inserted = self.client.table("scenes").insert(rows).execute().data
        logger.info(f"[{project_id}] created {len(inserted)} scenes")
        return sorted((Scene.model_validate(r) for r in inserted), key=lambda s: s.position)

    def update_scene(self, scene_id: str, **fields):
        self._update("scenes", scene_id, fields)

    def set_stage_status(
        self,
        scene_id: str,
        stage: Stage | str,
        status: StageStatus,
        error_message: Optional[str] = None,
        **fields,
    ):
        fields[Stage(stage).status_column] = status
        if error_message is not None:
            fields["error_message"] = error_message[:1000]
        self.update_scene(scene_id, **fields)

    # ── Assets ───────────────────────────────────────────────────────────────

    def get_asset(self, asset_id: str) -> Asset:
        return Asset.model_validate(self._one("assets", id=asset_id))

    def get_assets(self, asset_ids: list[str]) -> dict[str, Asset]:
        ids = [a for a in asset_ids if a]
        if not ids:
            return {}
        rows = self.client.table("assets").select("*").in_("id", ids).execute().data
        return {row["id"]: Asset.model_validate(row) for row in rows or []}

    def find_asset(self, project_id: str, kind: AssetKind, scene_id: Optional[str] = None) -> Optional[Asset]:
        query = self.client.table("assets").select("*").eq("project_id", project_id).eq("kind", _value(kind))
        if scene_id is not None:
            query = query.eq("scene_id", scene_id)
        rows = query.order("created_at", desc=True).execute().data or []
        if scene_id is None:
            rows = [r for r in rows if r.get("scene_id") is None]
        return Asset.model_validate(rows[0]) if rows else None

    def create_asset(
        self,
        project_id: str,
        kind: AssetKind,
        url: str,
        storage_path: Optional[str] = None,
        scene_id: Optional[str] = None,
        source_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Asset:
        """Create an asset, or return the one that already exists for the same scene/kind."""
        row = {
            "id": str(uuid4()),
            "project_id": project_id,
            "scene_id": scene_id,
            "kind": _value(kind),
            "url": url,
            "storage_path": storage_path,
            "source_url": source_url,
            "metadata": metadata or {},
            "created_at": _now_iso(),
        }

        if scene_id is None:
            existing = self.find_asset(project_id, kind)
            if existing is not None:
                return existing
            inserted = self.client.table("assets").insert(row).execute().data
            return Asset.model_validate(inserted[0])

        inserted = (
            self.client.table("assets")
            .upsert(row, on_conflict="scene_id,kind", ignore_duplicates=True)
            .execute()
            .data
        )
        if inserted:
            return Asset.model_validate(inserted[0])
        logger.info(f"[{scene_id}] {_value(kind)} asset already exists, reusing")
        return Asset.model_validate(self._one("assets", scene_id=scene_id, kind=_value(kind)))

    # ── Render jobs ──────────────────────────────────────────────────────────

    def upsert_render_job(
        self,
        external_id: str,
        project_id: str,
        provider: str,
        scene_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RenderJob:
        now = _now_iso()
        row = {
            "id": str(uuid4()),
            "project_id": project_id,
            "scene_id": scene_id,
            "external_id": external_id,
            "provider": provider,
            "status": RenderJobStatus.PROCESSING.value,
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        }
        inserted = (
            self.client.table("render_jobs")
            .upsert(row, on_conflict="external_id", ignore_duplicates=True)
            .execute()
            .data
        )
        if inserted:
            return RenderJob.model_validate(inserted[0])
        return self.get_render_job(external_id)

    def get_render_job(self, external_id: str) -> RenderJob:
        return RenderJob.model_validate(self._one("render_jobs", external_id=external_id))

    def find_active_render_job(self, scene_id: str, provider: str) -> Optional[RenderJob]:
        """Newest still-processing job for the scene at this provider."""
        rows = (
            self.client.table("render_jobs").select("*")
            .eq("scene_id", scene_id)
            .eq("provider", provider)
            .eq("status", RenderJobStatus.PROCESSING.value)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
            .data
        )
        return RenderJob.model_validate(rows[0]) if rows else None

    def update_render_job(self, external_id: str, metadata: Optional[dict] = None, **fields):
        if metadata:
            fields["metadata"] = {**self.get_render_job(external_id).metadata, **metadata}
        if "error_message" in fields and fields["error_message"]:
            fields["error_message"] = fields["error_message"][:1000]
        self._update("render_jobs", external_id, fields, key="external_id")
