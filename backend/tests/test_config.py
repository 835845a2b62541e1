from lovesync.core.config import DEFAULT_COLLECTIONS, Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.COLLECTIONS == DEFAULT_COLLECTIONS
    assert settings.SYNC_INTERVAL_SECONDS == 300
    assert settings.SYNC_RETRY_MAX_ATTEMPTS == 3
    assert settings.PENDING_STALE_HOURS == 24
    assert settings.LOCAL_STORE_KEY_PREFIX == "loveSite"


def test_mock_mode_needs_no_credentials():
    assert Settings(_env_file=None, REMOTE_MOCK_MODE=True).missing_remote_credentials() == []


def test_missing_credentials_are_listed():
    settings = Settings(_env_file=None, REMOTE_MOCK_MODE=False, REMOTE_APP_ID="id", REMOTE_APP_KEY=None)
    assert settings.missing_remote_credentials() == ["REMOTE_APP_KEY"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "180")
    monkeypatch.setenv("REMOTE_MOCK_MODE", "false")
    settings = Settings(_env_file=None)
    assert settings.SYNC_INTERVAL_SECONDS == 180
    assert settings.REMOTE_MOCK_MODE is False
