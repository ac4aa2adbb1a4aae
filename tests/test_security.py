"""Token helpers and the settings they read."""

import jwt
import pytest

from proposal_chat.config import Settings
from proposal_chat.utils.dependencies import user_from_token
from proposal_chat.utils.security import create_access_token, decode_access_token


class TestAccessTokens:

    def test_subject_survives(self):
        token = create_access_token("user-1")
        assert decode_access_token(token)["sub"] == "user-1"

    def test_expired_token_is_rejected(self):
        token = create_access_token("user-1", expires_minutes=-1)
        with pytest.raises(jwt.ExpiredSignatureError):
            decode_access_token(token)

    async def test_garbage_token_has_no_user(self):
        assert await user_from_token("not-a-token", db=None) is None
        assert await user_from_token(None, db=None) is None


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TYPING_TIMEOUT_SECONDS", raising=False)
        monkeypatch.delenv("MAX_ATTACHMENT_BYTES", raising=False)
        settings = Settings()
        assert settings.typing_timeout_seconds == 3.0
        assert settings.max_attachment_bytes == 20 * 1024 * 1024

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TYPING_THROTTLE_SECONDS", "0.5")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        settings = Settings()
        assert settings.typing_throttle_seconds == 0.5
        assert settings.redis_url == "redis://cache:6379/0"
