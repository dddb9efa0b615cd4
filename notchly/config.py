"""Application configuration."""

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from notchly.models.setup import BackendKind

_INSECURE_SECRET_DEFAULTS = {"change-me-in-production", "change-me", "secret", ""}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NOTCHLY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Development mode: when False, a real secret key is required
    dev_mode: bool = True

    # Which backend this build talks to (fixed per deployment)
    backend_kind: BackendKind = BackendKind.remote

    # Local model server
    tool_name: str = "ollama"
    local_host: str = "localhost"
    local_port: int = 11434
    liveness_timeout: float = 5.0
    models_timeout: float = 5.0
    which_timeout: float = 5.0
    suitable_model_substrings: list[str] = ["llama2", "llama3", "mistral"]
    default_model: str = "llama3"
    backend_startup_timeout: float = 30.0

    # Remote hosted API (Groq, OpenAI-compatible)
    remote_base_url: str = "https://api.groq.com/openai/v1"
    credential_timeout: float = 10.0
    credential_console_url: str = "https://console.groq.com/keys"

    # Model pull supervision
    progress_interval: float = 0.5  # seconds per synthetic tick
    progress_ticks: int = 100
    max_output_chars: int = 4000
    shutdown_timeout: float = 5.0

    # Persistence
    state_file: Path = Path.home() / ".notchly" / "setup.json"
    secret_key: str = "change-me-in-production"

    # Logging
    log_level: str = "info"

    @property
    def tags_url(self) -> str:
        """Liveness + model list endpoint of the local server."""
        return f"http://{self.local_host}:{self.local_port}/api/tags"

    @property
    def remote_models_url(self) -> str:
        return f"{self.remote_base_url.rstrip('/')}/models"

    @model_validator(mode="after")
    def _validate_production(self) -> "Settings":
        if not self.dev_mode and self.secret_key in _INSECURE_SECRET_DEFAULTS:
            raise ValueError(
                "NOTCHLY_SECRET_KEY must be set to a secure value when NOTCHLY_DEV_MODE=false"
            )
        if self.progress_ticks < 1:
            raise ValueError("progress_ticks must be at least 1")
        return self


settings = Settings()
