from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class InstanceConfig(BaseModel):
    name: str = "webedt"


class WorkerConfig(BaseModel):
    url: str = "http://localhost:5001"
    provider: str = "ClaudeAgentSDK"
    connect_timeout_seconds: float = 10.0
    connect_retry_attempts: int = Field(default=3, ge=1)
    connect_retry_base_seconds: float = 0.5

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class AuthConfig(BaseModel):
    cookie_name: str = "webedt_session"
    session_ttl_hours: int = 720


class TelemetryConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = True


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///webedt.db"


class StreamClientConfig(BaseModel):
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=5, ge=0)
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000


class AppConfig(BaseModel):
    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    environment: str = "dev"
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    stream_client: StreamClientConfig = Field(default_factory=StreamClientConfig)
