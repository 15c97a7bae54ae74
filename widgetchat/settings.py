import os


class Settings:
    # Any OpenAI-compatible chat completions API
    DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_CHAT_MODEL = "gpt-4o-mini"
    DEFAULT_TAGGING_MODEL = "gpt-4o-mini"
    DEFAULT_WIDGET_MODEL = "gpt-4o"

    def __init__(self):
        self._llm_base_url = os.environ.get("LLM_BASE_URL", self.DEFAULT_LLM_BASE_URL).rstrip("/")
        self._chat_model = os.environ.get("CHAT_MODEL", self.DEFAULT_CHAT_MODEL)
        self._tagging_model = os.environ.get("TAGGING_MODEL", self.DEFAULT_TAGGING_MODEL)
        self._widget_model = os.environ.get("WIDGET_MODEL", self.DEFAULT_WIDGET_MODEL)
        self._site_password = os.environ.get("SITE_PASSWORD") or None
        self._data_dir = os.environ.get(
            "DATA_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "../data"))
        )
        self._database_path = os.environ.get(
            "DATABASE_PATH", os.path.join(self._data_dir, "widgetchat.db")
        )
        self._display_timezone = os.environ.get("DISPLAY_TIMEZONE", "America/Los_Angeles")
        self._stagger_seconds = float(os.environ.get("REEXTRACT_STAGGER_SECONDS", "1.0"))
        self._existing_items_sample = int(os.environ.get("EXISTING_ITEMS_SAMPLE", "25"))
        self._log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    def get_llm_base_url(self) -> str:
        """Returns the base URL for the LLM API (e.g. 'https://api.openai.com/v1')."""
        return self._llm_base_url

    def set_llm_base_url(self, url: str):
        """Switch the active LLM endpoint at runtime."""
        self._llm_base_url = url.rstrip("/")

    def get_api_key(self) -> str:
        """API key from the environment, falling back to an api_key.txt at the repo root."""
        key = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if key:
            return key.strip()
        key_path = os.path.abspath(os.path.join(os.path.dirname(__file__), "../api_key.txt"))
        if os.path.exists(key_path):
            with open(key_path, "r") as f:
                return f.read().strip()
        return ""

    def get_chat_model(self) -> str:
        return self._chat_model

    def get_tagging_model(self) -> str:
        return self._tagging_model

    def get_widget_model(self) -> str:
        return self._widget_model

    def get_site_password(self) -> str | None:
        return self._site_password

    def set_site_password(self, password: str | None):
        self._site_password = password or None

    def get_data_dir(self) -> str:
        return self._data_dir

    def get_database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self._database_path}"

    def get_display_timezone(self) -> str:
        return self._display_timezone

    def get_stagger_seconds(self) -> float:
        """Delay between re-triggered data extractions after a schema change."""
        return self._stagger_seconds

    def set_stagger_seconds(self, seconds: float):
        self._stagger_seconds = seconds

    def get_existing_items_sample(self) -> int:
        return self._existing_items_sample

    def get_log_level(self) -> str:
        return self._log_level


settings = Settings()
