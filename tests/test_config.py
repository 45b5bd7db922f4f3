from newsdesk.config import DEFAULT_SLOT_HOURS, Settings
from newsdesk.scheduler import SlotScheduler


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("NEWS_API_KEY", "OPENAI_API_KEY", "NEWSDESK_ALWAYS_OPEN"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.news_api_key is None
        assert settings.always_open is False
        assert settings.slot_hours == DEFAULT_SLOT_HOURS
        assert settings.cache_ttl_seconds == 86400
        assert settings.temperature == 0.7
        assert settings.categories == ["tech", "finance", "science", "health", "ai"]

    def test_provider_keys_use_conventional_names(self, monkeypatch):
        monkeypatch.setenv("NEWS_API_KEY", "news-key")
        monkeypatch.setenv("OPENAI_API_KEY", "openai-key")
        settings = Settings(_env_file=None)

        assert settings.news_api_key == "news-key"
        assert settings.openai_api_key == "openai-key"

    def test_prefixed_overrides(self, monkeypatch):
        monkeypatch.setenv("NEWSDESK_ALWAYS_OPEN", "true")
        monkeypatch.setenv("NEWSDESK_CATEGORIES", '["tech", "ai"]')
        monkeypatch.setenv("NEWSDESK_SLOT_TIMEZONE", "Europe/Berlin")
        settings = Settings(_env_file=None)

        assert settings.always_open is True
        assert settings.categories == ["tech", "ai"]
        assert settings.slot_timezone == "Europe/Berlin"

    def test_scheduler_built_from_settings(self):
        settings = Settings(_env_file=None, always_open=True, refresh_window_minutes=10)
        scheduler = SlotScheduler.from_settings(settings)

        assert scheduler.always_open is True
        assert scheduler.refresh_window_minutes == 10
