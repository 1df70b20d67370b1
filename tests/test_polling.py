from avatar_studio import events
from avatar_studio.workflows.avatar_polling import AVATAR_POLL_MAX_ATTEMPTS
from avatar_studio.workflows.veo_polling import VEO_POLL_FIRST_DELAY

from .fakes import fake_avatar_renderer, fake_video_renderer
from .helpers import drain, record_emits, seed_project, seed_scenes


def start_scene(engine):
    engine.emit(events.SCENE_PROCESS_REQUESTED, {"project_id": "proj-1", "scene_id": "scene-1"})


def test_avatar_polling_succeeds_after_pending_checks(engine, db, clock, services):
    services.avatar_renderer = fake_avatar_renderer(pending_polls=3)
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    assert services.avatar_renderer.total_polls == 4
    scene = db.row("scenes", "scene-1")
    assert scene["avatar_status"] == "completed"

    asset = db.row("assets", scene["avatar_asset_id"])
    assert asset["kind"] == "avatar_video"
    assert asset["source_url"] == "https://d-id.test/talks/result.mp4"
    assert asset["url"].endswith("projects/proj-1/avatars/scene_1_avatar.mp4")

    (job,) = db.rows("render_jobs", provider="did")
    assert job["status"] == "completed"
    assert job["metadata"]["completed_attempt"] == 4
    assert len(engine.list_runs("avatar-polling")) == 4


def test_avatar_polling_gives_up_after_max_attempts(engine, db, clock, services):
    services.avatar_renderer = fake_avatar_renderer(pending_polls=10_000)
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")
    log = record_emits(engine, db)

    start_scene(engine)
    drain(engine, clock)

    assert services.avatar_renderer.total_polls == AVATAR_POLL_MAX_ATTEMPTS

    (job,) = db.rows("render_jobs", provider="did")
    assert job["status"] == "failed"
    assert f"timed out after {AVATAR_POLL_MAX_ATTEMPTS} attempts" in job["error_message"]

    scene = db.row("scenes", "scene-1")
    assert scene["avatar_status"] == "failed"
    assert db.row("projects", "proj-1")["status"] == "failed"
    assert events.BACKGROUND_REQUESTED not in [name for name, _, _ in log]


def test_provider_failure_stops_polling_without_retry(engine, db, clock, services):
    services.avatar_renderer = fake_avatar_renderer(pending_polls=1, fail_with="content policy violation")
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    assert services.avatar_renderer.total_polls == 2
    (job,) = db.rows("render_jobs", provider="did")
    assert job["status"] == "failed"
    assert "content policy violation" in job["error_message"]
    assert "content policy violation" in db.row("scenes", "scene-1")["error_message"]
    assert db.row("projects", "proj-1")["status"] == "failed"


def test_veo_background_for_high_priority_scenes(engine, db, clock, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="high", video_prompt="Slow pan across the skyline")

    start_scene(engine)
    drain(engine, clock)

    (_, args), = services.video_renderer.submitted
    image_url, prompt, emotion = args
    assert image_url.endswith("projects/proj-1/backgrounds/scene_1_background.png")
    assert prompt == "Slow pan across the skyline"

    scene = db.row("scenes", "scene-1")
    assert scene["background_status"] == "completed"
    video = db.row("assets", scene["background_asset_id"])
    assert video["kind"] == "background_video"
    assert video["url"].endswith("scene_1_background.mp4")
    assert db.rows("assets", scene_id="scene-1", kind="background_image")

    (veo_run,) = engine.list_runs("veo-polling")
    steps = engine.get_steps(veo_run["id"])
    assert veo_run["event"]["data"]["attempt"] == 1
    assert steps["wait-before-check"]["ts"] - veo_run["event"]["ts"] >= VEO_POLL_FIRST_DELAY


def test_low_priority_background_needs_no_provider(engine, db, clock, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    drain(engine, clock)

    assert services.image_generator.prompts == []
    assert services.video_renderer.submitted == []
    scene = db.row("scenes", "scene-1")
    asset = db.row("assets", scene["background_asset_id"])
    assert asset["metadata"]["provider"] == "placeholder"
    assert db.files[("media", "projects/proj-1/backgrounds/scene_1_background.png")].startswith(b"\x89PNG")


def test_veo_failure_marks_background_failed(engine, db, clock, services):
    services.video_renderer = fake_video_renderer(fail_with="RAI filtered")
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="high")

    start_scene(engine)
    drain(engine, clock)

    scene = db.row("scenes", "scene-1")
    assert scene["background_status"] == "failed"
    assert "RAI filtered" in scene["error_message"]
    (job,) = db.rows("render_jobs", provider="veo")
    assert job["status"] == "failed"
    assert db.row("projects", "proj-1")["status"] == "failed"


# ── Duplicate stage requests ─────────────────────────────────────────────────

def test_repeated_avatar_request_reuses_the_talk_in_flight(engine, db, clock, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="low")

    start_scene(engine)
    engine.run_until_idle()
    assert db.row("scenes", "scene-1")["avatar_status"] == "generating"
    assert len(services.avatar_renderer.submitted) == 1

    clock.advance(1)
    engine.emit(events.AVATAR_REQUESTED, {"project_id": "proj-1", "scene_id": "scene-1"})
    drain(engine, clock)

    assert len(services.avatar_renderer.submitted) == 1
    assert len(db.rows("render_jobs", provider="did")) == 1
    first, second = engine.list_runs("avatar-generator")
    assert second["output"]["skipped"] is True
    assert second["output"]["external_job_id"] == "did-job-1"
    assert db.row("scenes", "scene-1")["avatar_status"] == "completed"
    assert db.row("projects", "proj-1")["status"] == "scenes_processed"


def test_repeated_veo_request_reuses_the_operation_in_flight(engine, db, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="high", background_status="generating")
    services.store.upsert_render_job(external_id="veo-op-1", project_id="proj-1",
                                     scene_id="scene-1", provider="veo")

    engine.emit(events.VEO_GENERATION_REQUESTED, {
        "project_id": "proj-1", "scene_id": "scene-1", "image_url": "https://storage.test/bg.png",
    })
    engine.run_until_idle()

    assert services.video_renderer.submitted == []
    (run,) = engine.list_runs("veo-generator")
    assert run["output"] == {"skipped": True, "scene_id": "scene-1", "operation_id": "veo-op-1"}


def test_finished_operation_does_not_block_a_new_one(engine, db, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, priority="high", background_status="generating")
    services.store.upsert_render_job(external_id="veo-op-1", project_id="proj-1",
                                     scene_id="scene-1", provider="veo")
    services.store.update_render_job("veo-op-1", status="failed", error_message="RAI filtered")

    engine.emit(events.VEO_GENERATION_REQUESTED, {
        "project_id": "proj-1", "scene_id": "scene-1", "image_url": "https://storage.test/bg.png",
    })
    engine.run_until_idle()

    assert len(services.video_renderer.submitted) == 1
