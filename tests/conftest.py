import mongomock
import pytest

import auth
import mongo_integration
from app import create_app
from helpers import LLM_RESPONSE, FakeGenAI, FakeSession
from lyrics_llm import LyricsWriter
from payments import RazorpayClient
from song_store import create_song, generate_base_slug, generate_unique_slug
from suno_client import SunoClient


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    sent = []

    def fake_send_email(recipient_email, subject, body):
        sent.append({"to": recipient_email, "subject": subject, "body": body})
        return True

    monkeypatch.setattr(auth, "send_email", fake_send_email)
    return sent


@pytest.fixture
def suno_session():
    return FakeSession()


@pytest.fixture
def razorpay_session():
    return FakeSession()


@pytest.fixture
def genai():
    return FakeGenAI(LLM_RESPONSE)


@pytest.fixture
def app(tmp_path, suno_session, razorpay_session, genai, monkeypatch):
    monkeypatch.setattr("status_sync.RETRY_DELAY", 0)
    mongo_integration.set_client(mongomock.MongoClient())
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "DATABASE_PATH": str(tmp_path / "melodia-test.db"),
        "SESSION_TYPE": None,
        "DEMO_MODE": False,
        "RATELIMIT_ENABLED": False,
        "REQUIRE_PAYMENT": False,
        "PUBLIC_BASE_URL": "https://melodia.test",
        "RAZORPAY_KEY_ID": "rzp_test_key",
        "RAZORPAY_KEY_SECRET": "rzp_test_secret",
        "RAZORPAY_WEBHOOK_SECRET": "rzp_webhook_secret",
    })
    app.extensions["suno"] = SunoClient("https://suno.test", "suno-key", session=suno_session)
    writer = LyricsWriter("gemini-key", model="gemini-test")
    writer._client = genai
    app.extensions["lyrics_writer"] = writer
    app.extensions["razorpay"] = RazorpayClient(
        "https://razorpay.test/v1", "rzp_test_key", "rzp_test_secret", session=razorpay_session
    )
    yield app
    mongo_integration.set_client(None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def anon_client(client):
    response = client.post("/api/users/anonymous")
    assert response.status_code == 201
    return client


@pytest.fixture
def song_request_id(anon_client):
    response = anon_client.post("/api/create-song-request", json={
        "requesterName": "Arjun",
        "recipientDetails": "Maya, my sister",
        "occasion": "Birthday",
        "languages": "English",
        "mood": ["joyful", "nostalgic"],
        "songStory": "We grew up singing in the kitchen.",
    })
    assert response.status_code == 201
    return response.get_json()["requestId"]


@pytest.fixture
def make_song(app):
    def _make(**fields):
        with app.app_context():
            title = fields.pop("title", "Happy Birthday Maya")
            data = {
                "title": title,
                "slug": generate_unique_slug(generate_base_slug(title)),
                "lyrics": "[Chorus]\nHappy birthday Maya",
                "music_style": "Pop",
                "status": "PENDING",
                "suno_task_id": "task-123",
            }
            data.update(fields)
            return create_song(data)
    return _make
