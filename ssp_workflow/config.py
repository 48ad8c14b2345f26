"""Configuration for the SSP workflow workbench."""

from pydantic_settings import BaseSettings


class WorkbenchConfig(BaseSettings):
    """Workbench configuration settings."""

    # Collaborator API
    api_base_url: str = "http://localhost:3001"
    request_timeout: float = 60.0

    # Local storage settings
    storage_dir: str = "./data/local_state"
    max_snapshot_bytes: int = 4 * 1024 * 1024
    save_history_limit: int = 10
    clear_retry_attempts: int = 3

    # Auto-save settings
    autosave_enabled: bool = True
    autosave_delay_seconds: float = 2.0

    # Evidence settings
    evidence_history_limit: int = 12

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def get_config() -> WorkbenchConfig:
    """Get workbench configuration."""
    return WorkbenchConfig()
