from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    cors_origins: str = "http://localhost:5173"
    environment: str = "development"

    monitor_config_path: str = "config/monitor.yaml"
    monitor_cache_base_path: str = "public/data"
    monitor_ledger_path: str = "data/notif.json"
    monitor_ledger_database_url: str | None = None
    monitor_groups_path: str = "data/groups.json"

    monitor_gateway_url: str | None = None
    monitor_gateway_token: str | None = None
    monitor_gateway_timeout_seconds: int = 10

    backend_host: str = "127.0.0.1"
    backend_port: int = 9091

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_list(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]

    def resolve_path(self, raw_path: str) -> Path:
        candidate = Path(raw_path).expanduser()
        if candidate.is_absolute():
            return candidate
        return (PROJECT_ROOT / candidate).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
