import pytest

from helpers import record_info, suno_envelope
from song_store import get_song

VARIANTS_DONE = [
    {"id": "v1", "audio_url": "https://cdn.test/v1.mp3", "source_stream_audio_url": "https://cdn.test/v1.stream",
     "duration": 199.6},
    {"id": "v2", "audio_url": "https://cdn.test/v2.mp3", "source_stream_audio_url": "https://cdn.test/v2.stream",
     "duration": 188.1},
]


def callback(callback_type, variants=None, task_id="task-123"):
    return {"code": 200, "msg": "All generated successfully.",
            "data": {"callbackType": callback_type, "task_id": task_id, "data": variants or []}}


@pytest.fixture
def generated_song(anon_client, song_request_id, suno_session):
    suno_session.queue("POST", "/api/v1/generate", suno_envelope({"taskId": "task-123"}))
    draft = anon_client.post("/api/generate-lyrics", json={"requestId": song_request_id}).get_json()["draft"]
    anon_client.post("/api/approve-lyrics", json={"draftId": draft["id"], "requestId": song_request_id})
    response = anon_client.post("/api/generate-song", json={"lyricsDraftId": draft["id"],
                                                            "songRequestId": song_request_id})
    assert response.status_code == 200
    return response.get_json()


def test_invalid_request_id_is_rejected(client):
    response = client.post("/api/suno-webhook?requestId=abc", json=callback("complete"))
    assert response.status_code == 400


@pytest.mark.parametrize("body", [None, {}, {"data": None}, {"data": {"callbackType": "complete"}}])
def test_malformed_webhooks_are_acknowledged(client, body):
    response = client.post("/api/suno-webhook", json=body)
    assert response.status_code == 200
    assert response.get_json()["success"] is True


def test_non_json_body_is_acknowledged(client):
    response = client.post("/api/suno-webhook", data="not json", content_type="text/plain")
    assert response.status_code == 200
    assert response.get_json()["success"] is True


def test_non_object_variant_entries_are_acknowledged(client, generated_song):
    response = client.post("/api/suno-webhook", json=callback("complete", ["not-a-variant"]))
    assert response.status_code == 200
    assert response.get_json()["success"] is True


def test_infinite_duration_is_acknowledged(client, generated_song):
    body = ('{"code": 200, "msg": "ok", "data": {"callbackType": "complete", "task_id": "task-123", '
            '"data": [{"id": "v1", "audio_url": "https://cdn.test/v1.mp3", "duration": Infinity}]}}')
    response = client.post("/api/suno-webhook", data=body, content_type="application/json")
    assert response.status_code == 200
    assert response.get_json()["success"] is True

    status = client.get(f"/api/song/status/{generated_song['songId']}").get_json()
    assert status["status"] == "COMPLETED"
    assert status["statusInfo"]["songUrl"] == "https://cdn.test/v1.mp3"


def test_webhook_stages_update_song(client, generated_song, song_request_id):
    song_id = generated_song["songId"]
    url = f"/api/suno-webhook?requestId={song_request_id}"

    assert client.post(url, json=callback("text")).get_json()["message"] == "Acknowledged"

    client.post(url, json=callback("first", [{"id": "v1", "source_stream_audio_url": "https://cdn.test/v1.stream"}]))
    status = client.get(f"/api/song/status/{song_id}").get_json()
    assert status["status"] == "STREAM_AVAILABLE"
    assert status["statusInfo"]["streamUrl"] == "https://cdn.test/v1.stream"

    client.post(url, json=callback("complete", VARIANTS_DONE))
    status = client.get(f"/api/song/status/{song_id}").get_json()
    assert status["status"] == "COMPLETED"
    assert status["statusInfo"] == {"status": "ready", "isReady": True, "songUrl": "https://cdn.test/v1.mp3",
                                    "duration": 200}


def test_duplicate_complete_delivery_is_noop(client, generated_song):
    first = client.post("/api/suno-webhook", json=callback("complete", VARIANTS_DONE)).get_json()
    second = client.post("/api/suno-webhook", json=callback("complete", VARIANTS_DONE)).get_json()
    assert first["message"] == "Updated"
    assert second == {"success": True, "message": "No change", "status": "COMPLETED"}


def test_request_marked_completed(anon_client, generated_song, song_request_id):
    anon_client.post("/api/suno-webhook", json=callback("complete", VARIANTS_DONE))
    body = anon_client.get(f"/api/song-requests/{song_request_id}").get_json()
    assert body["songRequest"]["status"] == "completed"
    assert body["song"]["status"] == "COMPLETED"


class TestStatusRoute:
    def test_invalid_id(self, client):
        assert client.post("/api/song/status/abc").status_code == 400
        assert client.get("/api/song/status/0").status_code == 400

    def test_missing_song(self, client):
        assert client.post("/api/song/status/999").status_code == 404
        assert client.get("/api/song/status/999").status_code == 404

    def test_deleted_song_is_not_polled(self, app, client, generated_song, suno_session):
        song_id = generated_song["songId"]
        assert client.delete(f"/api/songs/{song_id}").status_code == 200

        assert client.post(f"/api/song/status/{song_id}").status_code == 404
        assert all("record-info" not in call[1] for call in suno_session.calls)
        with app.app_context():
            assert get_song(song_id)["status_check_count"] == 0

    def test_poll_completes_song(self, client, generated_song, suno_session):
        suno_session.queue("GET", "/api/v1/generate/record-info", record_info("SUCCESS", [
            {"id": "v1", "audioUrl": "https://cdn.test/v1.mp3", "duration": 199.6},
        ]))
        body = client.post(f"/api/song/status/{generated_song['songId']}").get_json()
        assert body["success"] is True
        assert body["status"]["isReady"] is True
        assert body["status"]["songUrl"] == "https://cdn.test/v1.mp3"
        assert body["song"]["status"] == "COMPLETED"
        assert body["song"]["created_at_display"]

    def test_poll_uses_supplied_task_id(self, client, generated_song, suno_session):
        suno_session.queue("GET", "/api/v1/generate/record-info", record_info("TEXT_SUCCESS", task_id="task-other"))
        body = client.post(f"/api/song/status/{generated_song['songId']}?taskId=task-other").get_json()
        assert body["status"]["status"] == "processing"
        assert "estimatedCompletion" in body["status"]
        assert suno_session.calls[-1][2]["params"] == {"taskId": "task-other"}

    def test_provider_outage_is_soft(self, client, generated_song, suno_session):
        suno_session.queue("GET", "/api/v1/generate/record-info", {"error": "bad gateway"}, status_code=502)
        response = client.post(f"/api/song/status/{generated_song['songId']}")
        body = response.get_json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["status"]["status"] == "processing"
        assert body["status"]["error"]
        assert body["song"]["status"] == "PENDING"

    def test_webhook_then_poll_agree(self, client, generated_song, suno_session):
        client.post("/api/suno-webhook", json=callback("complete", VARIANTS_DONE))
        polled = client.post(f"/api/song/status/{generated_song['songId']}").get_json()
        assert polled["status"]["songUrl"] == "https://cdn.test/v1.mp3"
        # Completed songs are answered from the database.
        assert all("record-info" not in call[1] for call in suno_session.calls)
