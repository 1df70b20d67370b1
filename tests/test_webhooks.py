import pytest

from avatar_studio import events, metrics
from avatar_studio.errors import NotFoundError
from avatar_studio.models import DIDWebhookPayload
from avatar_studio.webhooks import handle_did_webhook

from .helpers import record_emits, seed_project, seed_scenes


@pytest.fixture
def talk(db, services):
    seed_project(db, status="script_generated")
    seed_scenes(db, count=1, tts_status="completed", avatar_status="generating")
    return services.store.upsert_render_job("talk-1", "proj-1", "did", scene_id="scene-1")


def test_done_stores_video_and_emits_completion(engine, services, db, talk):
    log = record_emits(engine, db)

    result = handle_did_webhook(engine, services, DIDWebhookPayload(
        id="talk-1", status="done", result_url="https://d-id.test/talks/talk-1.mp4",
    ))

    assert result["status"] == "completed"
    scene = db.row("scenes", "scene-1")
    assert scene["avatar_status"] == "completed"
    asset = db.row("assets", scene["avatar_asset_id"])
    assert asset["kind"] == "avatar_video"
    assert asset["metadata"]["via"] == "webhook"
    assert db.files[("media", "projects/proj-1/avatars/scene_1_avatar.mp4")] == (
        b"remote:https://d-id.test/talks/talk-1.mp4"
    )
    assert db.rows("render_jobs", external_id="talk-1")[0]["status"] == "completed"

    ((name, scene_id, _),) = log
    assert (name, scene_id) == (events.AVATAR_COMPLETED, "scene-1")
    assert metrics.get_counter("webhooks.did.done") == 1


def test_repeated_webhook_is_ignored(engine, services, db, talk):
    log = record_emits(engine, db)
    payload = DIDWebhookPayload(id="talk-1", status="done", result_url="https://d-id.test/talks/talk-1.mp4")

    handle_did_webhook(engine, services, payload)
    again = handle_did_webhook(engine, services, payload)

    assert again["status"] == "ignored"
    assert len(db.rows("assets")) == 1
    assert len(log) == 1


def test_done_after_poll_completed_is_a_duplicate(engine, services, db, talk):
    db.row("scenes", "scene-1")["avatar_status"] = "completed"
    log = record_emits(engine, db)

    result = handle_did_webhook(engine, services, DIDWebhookPayload(
        id="talk-1", status="done", result_url="https://d-id.test/talks/talk-1.mp4",
    ))

    assert result["status"] == "duplicate"
    assert db.rows("assets") == []
    assert log == []


def test_error_marks_job_and_scene_failed_without_event(engine, services, db, talk):
    log = record_emits(engine, db)

    result = handle_did_webhook(engine, services, DIDWebhookPayload(
        id="talk-1", status="error", error={"kind": "FaceError", "description": "No face detected"},
    ))

    assert result == {"status": "failed", "error": "No face detected"}
    (job,) = db.rows("render_jobs", external_id="talk-1")
    assert job["status"] == "failed"
    scene = db.row("scenes", "scene-1")
    assert scene["avatar_status"] == "failed"
    assert scene["error_message"] == "No face detected"
    assert log == []


def test_done_without_result_url_fails(engine, services, db, talk):
    result = handle_did_webhook(engine, services, DIDWebhookPayload(id="talk-1", status="done"))
    assert result["status"] == "failed"
    assert db.row("scenes", "scene-1")["avatar_status"] == "failed"


def test_intermediate_status_is_ignored(engine, services, db, talk):
    result = handle_did_webhook(engine, services, DIDWebhookPayload(id="talk-1", status="started"))
    assert result["status"] == "ignored"
    assert db.row("scenes", "scene-1")["avatar_status"] == "generating"


def test_unknown_talk_raises_not_found(engine, services):
    with pytest.raises(NotFoundError):
        handle_did_webhook(engine, services, DIDWebhookPayload(id="missing", status="done"))
