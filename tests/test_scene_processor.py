import pytest

from avatar_studio import events
from avatar_studio.did import DID_PRESET_AVATAR_URL
from avatar_studio.engine import WorkflowEngine
from avatar_studio.errors import PermanentProviderError
from avatar_studio.workflows import build_functions

from .helpers import drain, record_emits, seed_project, seed_scenes


def start_scene(engine, scene_id="scene-1"):
    return engine.emit(events.SCENE_PROCESS_REQUESTED,
                       {"project_id": "proj-1", "scene_id": scene_id, "user_id": "user-1"})


def only_run(engine, function_id):
    runs = engine.list_runs(function_id)
    assert len(runs) == 1, f"{function_id} ran {len(runs)} times"
    return runs[0]


def test_stages_run_in_order_and_scenes_chain(engine, db, clock):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=2, priority="medium")
    log = record_emits(engine, db)

    start_scene(engine)
    drain(engine, clock)

    for scene_id in ("scene-1", "scene-2"):
        names = [name for name, sid, _ in log if sid == scene_id and name in {
            events.TTS_REQUESTED, events.TTS_COMPLETED,
            events.AVATAR_REQUESTED, events.AVATAR_COMPLETED,
            events.BACKGROUND_REQUESTED, events.BACKGROUND_COMPLETED,
        }]
        assert names == [
            events.TTS_REQUESTED, events.TTS_COMPLETED,
            events.AVATAR_REQUESTED, events.AVATAR_COMPLETED,
            events.BACKGROUND_REQUESTED, events.BACKGROUND_COMPLETED,
        ]

    # A stage is only requested once the previous one is completed
    for name, _, row in log:
        if name == events.AVATAR_REQUESTED:
            assert row["tts_status"] == "completed"
        if name == events.BACKGROUND_REQUESTED:
            assert row["avatar_status"] == "completed"

    flat = [(name, sid) for name, sid, _ in log]
    assert flat.index((events.BACKGROUND_COMPLETED, "scene-1")) < flat.index((events.TTS_REQUESTED, "scene-2"))
    assert [name for name, _, _ in log].count(events.VIDEO_COMPOSE_REQUESTED) == 1

    project = db.row("projects", "proj-1")
    assert project["status"] == "scenes_processed"
    assert [e["scene_id"] for e in project["metadata"]["composition"]["scenes"]] == ["scene-1", "scene-2"]
    assert len(engine.list_runs("scene-processor")) == 2


def test_rate_limit_sleep_between_scenes(engine, db, clock):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    steps = engine.get_steps(only_run(engine, "scene-processor")["id"])
    assert steps["rate-limit"]["ts"] - steps["verify-background-completed"]["ts"] >= 2
    assert "trigger-video-compositor" in steps
    assert "trigger-next-scene" not in steps


def test_deleted_project_is_skipped(engine, db, clock, services):
    seed_project(db, status="script_generated", deleted_at="2026-01-01T00:00:00")
    seed_scenes(db, count=1)

    start_scene(engine)
    drain(engine, clock)

    run = only_run(engine, "scene-processor")
    assert run["status"] == "completed"
    assert run["output"]["skipped"] is True
    assert services.tts.calls == []


def test_failed_project_is_skipped(engine, db, clock, services):
    seed_project(db, status="failed")
    seed_scenes(db, count=1)

    start_scene(engine)
    drain(engine, clock)

    assert only_run(engine, "scene-processor")["output"]["reason"] == "project already failed"
    assert services.tts.calls == []


def test_stage_failure_fails_scene_and_project(engine, db, clock, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=2)
    services.tts.error = PermanentProviderError("elevenlabs", "voice not found", status_code=404)

    start_scene(engine)
    drain(engine, clock)

    scene = db.row("scenes", "scene-1")
    assert scene["tts_status"] == "failed"
    assert "voice not found" in scene["error_message"]
    assert scene["avatar_status"] == "pending"

    project = db.row("projects", "proj-1")
    assert project["status"] == "failed"
    assert "tts failed for scene scene-1" in project["error_message"]

    assert only_run(engine, "scene-processor")["status"] == "failed"
    assert services.avatar_renderer.submitted == []
    assert db.row("scenes", "scene-2")["tts_status"] == "pending"


def test_stage_wait_timeout_is_fatal(redis_client, services, db, clock):
    functions = [fn for fn in build_functions() if fn.id != "tts-generator"]
    engine = WorkflowEngine(redis_client, functions, deps=services, clock=clock)
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1)

    started = clock()
    start_scene(engine)
    drain(engine, clock)

    assert clock() - started >= 300
    scene = db.row("scenes", "scene-1")
    assert scene["tts_status"] == "failed"
    assert "Timed out after 300s" in scene["error_message"]

    project = db.row("projects", "proj-1")
    assert project["status"] == "failed"
    assert "Timed out after 300s waiting for tts" in project["error_message"]


# ── Custom avatar design ─────────────────────────────────────────────────────

def seed_custom_project(db, **fields):
    row = {
        "status": "script_generated",
        "avatar_design_mode": "custom",
        "avatar_design_status": "pending",
        "avatar_design_settings": {"gender": "female", "age": "30s", "style": "business"},
    }
    row.update(fields)
    return seed_project(db, **row)


def test_avatar_design_quota_falls_back_to_preset(engine, db, clock, services):
    seed_custom_project(db)
    seed_scenes(db, count=1, priority="low")
    services.image_generator.design_error = PermanentProviderError(
        "gemini-image", "Quota exceeded for image generation", status_code=429,
    )

    start_scene(engine)
    engine.emit(events.AVATAR_DESIGN_REQUESTED, {"project_id": "proj-1"})
    drain(engine, clock)

    project = db.row("projects", "proj-1")
    assert project["avatar_design_status"] == "failed"
    assert project["metadata"]["fallback_to_preset"] is True
    assert project["metadata"]["avatar_design_error"]["reason"] == "Quota exceeded"
    assert project["status"] == "scenes_processed"

    (_, args), = services.avatar_renderer.submitted
    assert args[0] == DID_PRESET_AVATAR_URL

    steps = engine.get_steps(only_run(engine, "scene-processor")["id"])
    design = steps["wait-for-avatar-design"]["data"]
    assert design is not None
    assert design["data"]["fallback_to_preset"] is True


def test_custom_avatar_design_is_used_once_ready(engine, db, clock, services):
    seed_custom_project(db)
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    engine.emit(events.AVATAR_DESIGN_REQUESTED, {"project_id": "proj-1"})
    drain(engine, clock)

    project = db.row("projects", "proj-1")
    assert project["avatar_design_status"] == "completed"
    design = db.rows("assets", project_id="proj-1", kind="avatar_design")[0]

    (_, args), = services.avatar_renderer.submitted
    assert args[0] == design["url"]
    assert project["status"] == "scenes_processed"


def test_stuck_avatar_design_times_out_to_preset(redis_client, services, db, clock):
    functions = [fn for fn in build_functions() if fn.id != "avatar-design-generator"]
    engine = WorkflowEngine(redis_client, functions, deps=services, clock=clock)
    seed_custom_project(db, avatar_design_status="generating")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    steps = engine.get_steps(only_run(engine, "scene-processor")["id"])
    assert steps["wait-for-avatar-design"]["data"] is None

    (_, args), = services.avatar_renderer.submitted
    assert args[0] == DID_PRESET_AVATAR_URL
    assert db.row("projects", "proj-1")["status"] == "scenes_processed"


@pytest.mark.parametrize("status", ["completed", "failed"])
def test_no_design_wait_when_design_is_settled(engine, db, clock, status):
    seed_custom_project(db, avatar_design_status=status,
                        metadata={"fallback_to_preset": status == "failed"})
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    steps = engine.get_steps(only_run(engine, "scene-processor")["id"])
    assert steps["check-avatar-design-status"]["data"] is False
    assert "wait-for-avatar-design" not in steps
