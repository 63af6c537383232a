import pytest

from classwall_sync.config import Settings, load_settings


def test_defaults(monkeypatch):
    for name in ("CLASSWALL_PROJECT_ID", "CLASSWALL_MUTATION_TIMEOUT", "CLASSWALL_MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings(env_file=False)

    assert settings == Settings()
    assert settings.mutation_timeout == 15.0
    assert settings.feed_collection == "feedItems"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CLASSWALL_PROJECT_ID", "school-app")
    monkeypatch.setenv("CLASSWALL_BASE_URL", "http://localhost:8080/v1/")
    monkeypatch.setenv("CLASSWALL_MUTATION_TIMEOUT", "5")
    monkeypatch.setenv("CLASSWALL_MAX_RETRIES", "1")
    monkeypatch.setenv("CLASSWALL_API_KEY", "")

    settings = load_settings(env_file=False)

    assert settings.project_id == "school-app"
    assert settings.base_url == "http://localhost:8080/v1"
    assert settings.mutation_timeout == 5.0
    assert settings.max_retries == 1
    assert settings.api_key is None


def test_invalid_number(monkeypatch):
    monkeypatch.setenv("CLASSWALL_MAX_RETRIES", "many")
    with pytest.raises(ValueError, match="CLASSWALL_MAX_RETRIES"):
        load_settings(env_file=False)


def test_attendance_conflict_retries(monkeypatch):
    monkeypatch.setenv("CLASSWALL_MAX_RETRIES", "1")
    monkeypatch.setenv("CLASSWALL_ATTENDANCE_CONFLICT_RETRIES", "6")

    settings = load_settings(env_file=False)

    assert settings.max_retries == 1
    assert settings.attendance_conflict_retries == 6
