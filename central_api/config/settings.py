"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Registry persistence
    persistence_file: str = "clients.json"  # Empty = in-memory only

    # Registration gate
    # Shared secret expected in X-API-Key on /register and /unregister
    api_key: str = ""  # Empty = open registration

    # Server
    host: str = "0.0.0.0"
    port: int = 12001

    # Relay
    validate_api_url: bool = True
    upstream_timeout: float | None = None  # None = wait for upstream indefinitely

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def gate_enabled(self) -> bool:
        return bool(self.api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
