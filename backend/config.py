# backend/config.py
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    host: str = "127.0.0.1"
    port: int = 8765
    storage_dir: str = "./storage"
    max_frame_size: int = 1 << 20   # bytes

    # Client
    server_url: str = "ws://127.0.0.1:8765"
    reconnect_delay: float = 3.0    # seconds, fixed (no backoff growth)
    rpc_timeout: float = 5.0        # seconds
    local_storage_path: str = "./local_storage.json"

    # Verification
    key_cache_ttl: float = Field(default=30.0, gt=0)  # seconds

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_settings(**overrides) -> Settings:
    """Environment first, explicit keyword overrides win."""
    return Settings(**overrides)
