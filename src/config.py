"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Diasend Nightscout Bridge"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Polling ---
    polling_enabled: bool = True  # disable to run cycles only via POST /api/v1/sync/run
    source: str = "diasend"

    # --- Nightscout ---
    nightscout_url: str = ""
    nightscout_api_secret: str = ""  # plain secret; hashed before sending
    nightscout_profile_name: str = "Diasend"

    # --- Diasend ---
    diasend_username: str = ""
    diasend_password: str = ""
    diasend_client_id: str = ""
    diasend_client_secret: str = ""

    # --- Profile ---
    timezone_name: str | None = None  # IANA name written to the profile, e.g. "Europe/Berlin"

    # --- HTTP ---
    http_timeout_seconds: float = 30.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_configured(self) -> bool:
        """True when both collaborators have credentials."""
        return bool(
            self.nightscout_url
            and self.nightscout_api_secret
            and self.diasend_username
            and self.diasend_password
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
