import pytest
from pydantic import ValidationError

from chatrelay.config import Settings, TurnPolicy, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.model == "gpt-4o-mini"
    assert settings.assistant_name == "Chatbot"
    assert settings.title_max_length == 30
    assert settings.turn_policy == TurnPolicy.QUEUE


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("TURN_POLICY", "reject")
    monkeypatch.setenv("TITLE_MAX_LENGTH", "12")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test")
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.turn_policy == TurnPolicy.REJECT
        assert settings.title_max_length == 12
        assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]
    finally:
        monkeypatch.undo()
        reset_settings_cache()


def test_invalid_turn_policy_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, turn_policy="drop")


def test_title_length_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, title_max_length=0)


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
