import pytest

from siorg_sync import settings


@pytest.fixture
def valid_settings(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://localhost/siorg")
    monkeypatch.setattr(settings, "REGISTRY_BASE_URL", "https://api.siorg.gov.br")
    monkeypatch.setattr(settings, "BATCH_SIZE", 10)
    monkeypatch.setattr(settings, "MAX_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY", 1.0)
    monkeypatch.setattr(settings, "RETRY_MAX_DELAY", 60.0)
    monkeypatch.setattr(settings, "RETRY_JITTER", 0.2)
    monkeypatch.setattr(settings, "WORKER_CONCURRENCY", 4)
    monkeypatch.setattr(settings, "DB_POOL_MAX", 10)
    return monkeypatch


def test_valid_config_passes(valid_settings):
    settings.validate_config()


def test_every_problem_is_reported(valid_settings):
    valid_settings.setattr(settings, "DATABASE_URL", None)
    valid_settings.setattr(settings, "RETRY_JITTER", 1.5)
    valid_settings.setattr(settings, "WORKER_CONCURRENCY", 20)

    with pytest.raises(ValueError) as excinfo:
        settings.validate_config()

    message = str(excinfo.value)
    assert "DATABASE_URL is required" in message
    assert "RETRY_JITTER" in message
    assert "WORKER_CONCURRENCY" in message
