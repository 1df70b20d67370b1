"""Clock, drain loop and row seeding shared by the workflow tests."""

from avatar_studio import queue as task_queue
from avatar_studio.storage import DOCUMENTS_BUCKET


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def drain(engine, clock, max_rounds: int = 5000) -> int:
    """Run every task, jumping the clock to each scheduled wake-up, until nothing is left."""
    processed = 0
    for _ in range(max_rounds):
        processed += engine.run_until_idle()
        due = task_queue.next_scheduled_at(engine.redis)
        if due is None:
            return processed
        clock.now = max(clock.now, due)
    raise AssertionError("workflows did not settle")


# ── Seed helpers ─────────────────────────────────────────────────────────────

def seed_project(db, project_id: str = "proj-1", **fields) -> dict:
    row = {
        "id": project_id,
        "user_id": "user-1",
        "title": "Quarterly results",
        "duration": 30,
        "status": "draft",
        "avatar_design_mode": "preset",
        "avatar_design_status": None,
        "avatar_design_settings": None,
        "error_message": None,
        "metadata": {},
        "deleted_at": None,
        **fields,
    }
    db.tables.setdefault("projects", []).append(row)
    return row


def seed_document(db, project_id: str = "proj-1", document_id: str = "doc-1", **metadata) -> dict:
    path = f"{project_id}/report.pdf"
    row = {
        "id": document_id,
        "project_id": project_id,
        "storage_path": path,
        "status": "uploaded",
        "metadata": {"file_size": 2048, "mime_type": "application/pdf", **metadata},
        "created_at": "2026-01-01T00:00:00",
    }
    db.tables.setdefault("documents", []).append(row)
    db.files[(DOCUMENTS_BUCKET, path)] = b"%PDF-1.7 fake"
    return row


def seed_scenes(db, project_id: str = "proj-1", count: int = 2, **fields) -> list:
    rows = []
    for n in range(1, count + 1):
        row = {
            "id": f"scene-{n}",
            "project_id": project_id,
            "scene_number": n,
            "position": n,
            "script": f"Point number {n}.",
            "duration": 8,
            "visual_description": f"Slide {n}",
            "image_prompt": None,
            "video_prompt": None,
            "priority": "medium",
            "emotion": "professional",
            "tts_status": "pending",
            "avatar_status": "pending",
            "background_status": "pending",
            "audio_asset_id": None,
            "avatar_asset_id": None,
            "background_asset_id": None,
            "error_message": None,
            "metadata": {},
            **fields,
        }
        db.tables.setdefault("scenes", []).append(row)
        rows.append(row)
    return rows


def seed_complete_scene(db, project_id: str, n: int, background_kind: str = "background_image") -> dict:
    """A scene with all three stages completed and its assets in place."""
    scene_id = f"scene-{n}"
    assets = {}
    for column, kind in (
        ("audio_asset_id", "audio"),
        ("avatar_asset_id", "avatar_video"),
        ("background_asset_id", background_kind),
    ):
        asset_id = f"{scene_id}-{kind}"
        db.tables.setdefault("assets", []).append({
            "id": asset_id,
            "project_id": project_id,
            "scene_id": scene_id,
            "kind": kind,
            "url": f"https://storage.test/media/{scene_id}/{kind}",
            "storage_path": None,
            "source_url": None,
            "metadata": {},
            "created_at": "2026-01-01T00:00:00",
        })
        assets[column] = asset_id
    row = {
        "id": scene_id,
        "project_id": project_id,
        "scene_number": n,
        "position": n,
        "script": f"Point number {n}.",
        "duration": 8,
        "priority": "high",
        "emotion": "professional",
        "tts_status": "completed",
        "avatar_status": "completed",
        "background_status": "completed",
        "metadata": {},
        **assets,
    }
    db.tables.setdefault("scenes", []).append(row)
    return row




def record_emits(engine, db) -> list:
    """
    Log every emitted event as (name, scene_id, scene row snapshot) so tests
    can check what a scene looked like when each stage was requested.
    """
    log = []
    emit = engine.emit

    def recording_emit(name, data):
        scene_id = data.get("scene_id")
        rows = [r for r in db.tables.get("scenes", []) if r["id"] == scene_id]
        log.append((name, scene_id, dict(rows[0]) if rows else None))
        return emit(name, data)

    engine.emit = recording_emit
    return log
