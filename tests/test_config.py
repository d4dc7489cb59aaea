"""
Tests for environment-driven settings and the Twilio client's signed URL.
"""

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from breezy.config import Settings
from breezy.main import create_app
from breezy.services.twilio_client import TwilioClient

from conftest import make_business, voice_form

PUBLIC_BASE_URL = "https://receptionist.example.com"


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #


class TestSettings:

    def test_values_coerced_from_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "5.5")
        monkeypatch.setenv("LLM_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("BROADCAST_QUEUE_SIZE", "25")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings()
        assert settings.llm_timeout_seconds == 5.5
        assert settings.llm_max_attempts == 4
        assert settings.broadcast_queue_size == 25
        assert settings.log_level == "DEBUG"

    def test_blank_credentials_are_unset(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "  ")
        monkeypatch.setenv("SUPABASE_URL", "")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "")
        settings = Settings()
        assert settings.openai_api_key is None
        assert not settings.supabase_enabled
        assert not settings.twilio_enabled

    def test_public_base_url_trailing_slash_dropped(self, monkeypatch):
        monkeypatch.setenv("PUBLIC_BASE_URL", f"{PUBLIC_BASE_URL}/")
        assert Settings().public_base_url == PUBLIC_BASE_URL

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("LLM_BACKOFF_SECONDS", "3")
        assert Settings(llm_backoff_seconds=0.0).llm_backoff_seconds == 0.0


# ------------------------------------------------------------------ #
# Signed webhook URL
# ------------------------------------------------------------------ #


class TestWebhookUrl:

    def client(self, **overrides):
        return TwilioClient(Settings(twilio_account_sid=None, twilio_auth_token=None, public_base_url=PUBLIC_BASE_URL, **overrides))

    def test_public_base_url_keeps_query(self):
        url = self.client().webhook_url("http://internal:8000/api/twilio/voice?tenant=acme", "/api/twilio/voice", "tenant=acme")
        assert url == f"{PUBLIC_BASE_URL}/api/twilio/voice?tenant=acme"

    def test_public_base_url_without_query(self):
        url = self.client().webhook_url("http://internal:8000/api/twilio/voice", "/api/twilio/voice")
        assert url == f"{PUBLIC_BASE_URL}/api/twilio/voice"

    def test_request_url_used_without_public_base(self):
        client = TwilioClient(Settings(twilio_account_sid=None, twilio_auth_token=None, public_base_url=None))
        assert client.webhook_url("http://testserver/api/twilio/voice?x=1", "/api/twilio/voice", "x=1") == "http://testserver/api/twilio/voice?x=1"

    def test_signed_callback_with_query_accepted(self, db, fake_llm, broadcaster, settings):
        db.add_business(make_business())
        telephony = TwilioClient(Settings(twilio_account_sid="AC00000000000000000000000000000000", twilio_auth_token="secret", public_base_url=PUBLIC_BASE_URL))
        app = create_app(db=db, llm=fake_llm, telephony=telephony, broadcaster=broadcaster, settings=settings)
        form = voice_form()
        signature = RequestValidator("secret").compute_signature(f"{PUBLIC_BASE_URL}/api/twilio/voice?tenant=acme", form)

        with TestClient(app) as client:
            accepted = client.post("/api/twilio/voice?tenant=acme", data=form, headers={"X-Twilio-Signature": signature})
            rejected = client.post("/api/twilio/voice?tenant=other", data=form, headers={"X-Twilio-Signature": signature})
        assert accepted.status_code == 200
        assert rejected.status_code == 401
