"""
Mock server configuration management
"""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Mock server defaults, overridable from MOCKTCP_* environment variables"""

    # Listener
    host: str = "127.0.0.1"
    port: int = 0  # 0 = ephemeral

    # Per-connection idle timeout
    timeout: float = 2.0

    # Logging
    debug: bool = False  # per-action trace events
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    model_config = SettingsConfigDict(env_prefix="MOCKTCP_", env_file=".env", extra="ignore")


settings = Settings()
