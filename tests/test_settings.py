from widgetchat.settings import Settings


def test_defaults(monkeypatch):
    for name in ("LLM_BASE_URL", "CHAT_MODEL", "SITE_PASSWORD", "DISPLAY_TIMEZONE", "REEXTRACT_STAGGER_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATA_DIR", "/tmp/widgetchat-data")
    monkeypatch.delenv("DATABASE_PATH", raising=False)

    s = Settings()
    assert s.get_llm_base_url() == Settings.DEFAULT_LLM_BASE_URL
    assert s.get_chat_model() == Settings.DEFAULT_CHAT_MODEL
    assert s.get_site_password() is None
    assert s.get_display_timezone() == "America/Los_Angeles"
    assert s.get_stagger_seconds() == 1.0
    assert s.get_database_url() == "sqlite+aiosqlite:////tmp/widgetchat-data/widgetchat.db"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LLM_BASE_URL", "http://localhost:11434/v1/")
    monkeypatch.setenv("SITE_PASSWORD", "hunter2")
    monkeypatch.setenv("REEXTRACT_STAGGER_SECONDS", "0.5")

    s = Settings()
    assert s.get_llm_base_url() == "http://localhost:11434/v1"
    assert s.get_site_password() == "hunter2"
    assert s.get_stagger_seconds() == 0.5


def test_api_key_prefers_environment(monkeypatch):
    monkeypatch.setenv("LLM_API_KEY", "  sk-env  ")
    assert Settings().get_api_key() == "sk-env"


def test_setters():
    s = Settings()
    s.set_llm_base_url("https://example.test/v1/")
    s.set_site_password("")
    s.set_stagger_seconds(0)
    assert s.get_llm_base_url() == "https://example.test/v1"
    assert s.get_site_password() is None
    assert s.get_stagger_seconds() == 0
