from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ChannelKey


class DiscordSettings(BaseModel):
    token: str = Field(..., description="Bot token.")
    guild_id: str
    api_base_url: str = "https://discord.com/api/v10"
    timeout_seconds: float = Field(default=10.0, gt=0)
    sync_commands: bool = True


class RoleSettings(BaseModel):
    special_role_id: str = Field(..., description="Role granted temporarily by /serverpermissions.")
    authcode_generator_role_ids: list[str] = Field(default_factory=list)
    grant_operator_role_ids: list[str] = Field(default_factory=list)


class ChannelSettings(BaseModel):
    auth_log: str
    perm_log: str
    special_activity_log: str

    def for_key(self, key: ChannelKey) -> str:
        return getattr(self, key.value)


class TimingSettings(BaseModel):
    authcode_ttl_ms: int = Field(default=60_000, gt=0)
    expiry_check_interval_ms: int = Field(default=10_000, gt=0)
    audit_poll_interval_ms: int = Field(default=3_000, gt=0)
    elevation_cache_ttl_ms: int = Field(default=15_000, ge=0)
    elevation_cache_max_entries: int = Field(default=10_000, ge=1)
    max_grant_duration_ms: int = Field(default=30 * 86_400_000, gt=0)


class AuditSettings(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=100)


class SweepSettings(BaseModel):
    concurrency: int = Field(default=4, ge=1)


class StorageSettings(BaseModel):
    backend: Literal["json", "sqlite"] = "json"
    data_dir: str = "data"
    sqlite_path: str = "hightide.db"


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    use_json: bool = Field(default=False, description="Use JSON format instead of colored output")


class BotSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HIGHTIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    discord: DiscordSettings
    roles: RoleSettings
    channels: ChannelSettings
    timing: TimingSettings = TimingSettings()
    audit: AuditSettings = AuditSettings()
    sweep: SweepSettings = SweepSettings()
    storage: StorageSettings = StorageSettings()
    logging: LoggingSettings = LoggingSettings()
