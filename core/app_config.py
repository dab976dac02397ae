from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.config_defaults import (
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_CMD_MAX_AGE_SECONDS,
    DEFAULT_NATS_EVT_MAX_AGE_SECONDS,
    DEFAULT_NATS_FETCH_BATCH,
    DEFAULT_NATS_FETCH_TIMEOUT_SECONDS,
    DEFAULT_NATS_SERVERS,
    DEFAULT_NATS_TLS_ENABLED,
    DEFAULT_POSTGRES_DSN,
    DEFAULT_POSTGRES_MAX_SIZE,
    DEFAULT_POSTGRES_MIN_SIZE,
    DEFAULT_PROTOCOL_VERSION,
    DEFAULT_PROVIDER_API_KEY_ENV,
    DEFAULT_PROVIDER_BASE_URL,
    DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    DEFAULT_RETRY_INITIAL_DELAY_MS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_STATUS_CODES,
    DEFAULT_TURN_DISPATCH_MODE,
    DEFAULT_TURN_ERROR_MESSAGE_MAX_CHARS,
    DEFAULT_TURN_MAX_CYCLES,
    DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS,
    DEFAULT_TURN_STUCK_TIMEOUT_SECONDS,
    DEFAULT_TURN_TRANSIENT_MESSAGES_ENABLED,
    DEFAULT_WORKER_ACK_WAIT_SECONDS,
    DEFAULT_WORKER_BROADCAST_INACTIVE_SECONDS,
    DEFAULT_WORKER_COLLABORATORS,
    DEFAULT_WORKER_DURABLE_PREFIX,
    DEFAULT_WORKER_MAX_DELIVER,
    DEFAULT_WORKER_MAX_INFLIGHT,
    DEFAULT_WORKER_QUEUE_GROUP,
    default_config,
)
from core.config_loader import (
    apply_defaults,
    apply_env_overrides,
    apply_legacy_env_overrides,
    _load_raw_config,
)

DispatchMode = Literal["queue", "broadcast"]


class ProtocolConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    version: str = DEFAULT_PROTOCOL_VERSION


class NatsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    servers: list[str] = Field(default_factory=lambda: list(DEFAULT_NATS_SERVERS))
    tls_enabled: bool = DEFAULT_NATS_TLS_ENABLED
    cert_dir: str = DEFAULT_NATS_CERT_DIR
    cmd_max_age_seconds: int = Field(default=DEFAULT_NATS_CMD_MAX_AGE_SECONDS, ge=1)
    evt_max_age_seconds: int = Field(default=DEFAULT_NATS_EVT_MAX_AGE_SECONDS, ge=1)
    fetch_batch: int = Field(default=DEFAULT_NATS_FETCH_BATCH, ge=1)
    fetch_timeout_seconds: float = Field(default=DEFAULT_NATS_FETCH_TIMEOUT_SECONDS, gt=0)


class PostgresConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    dsn: str = DEFAULT_POSTGRES_DSN
    min_size: int = DEFAULT_POSTGRES_MIN_SIZE
    max_size: int = DEFAULT_POSTGRES_MAX_SIZE


class TurnConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_cycles: int = Field(default=DEFAULT_TURN_MAX_CYCLES, ge=1)
    dispatch_mode: DispatchMode = DEFAULT_TURN_DISPATCH_MODE
    notify_timeout_seconds: float = DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS
    error_message_max_chars: int = Field(default=DEFAULT_TURN_ERROR_MESSAGE_MAX_CHARS, ge=1)
    transient_messages_enabled: bool = DEFAULT_TURN_TRANSIENT_MESSAGES_ENABLED
    stuck_turn_timeout_seconds: float = DEFAULT_TURN_STUCK_TIMEOUT_SECONDS

    @field_validator("dispatch_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_attempts: int = Field(default=DEFAULT_RETRY_MAX_ATTEMPTS, ge=0)
    initial_delay_ms: int = Field(default=DEFAULT_RETRY_INITIAL_DELAY_MS, ge=0)
    retryable_status_codes: list[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_STATUS_CODES))


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    base_url: str = DEFAULT_PROVIDER_BASE_URL
    timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    api_key_env: str = DEFAULT_PROVIDER_API_KEY_ENV


class WorkerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    queue_group: str = DEFAULT_WORKER_QUEUE_GROUP
    durable_prefix: str = DEFAULT_WORKER_DURABLE_PREFIX
    max_inflight: int = DEFAULT_WORKER_MAX_INFLIGHT
    ack_wait_seconds: int = Field(default=DEFAULT_WORKER_ACK_WAIT_SECONDS, ge=1)
    max_deliver: int = Field(default=DEFAULT_WORKER_MAX_DELIVER, ge=1)
    broadcast_inactive_seconds: int = Field(default=DEFAULT_WORKER_BROADCAST_INACTIVE_SECONDS, ge=1)
    collaborators: str = DEFAULT_WORKER_COLLABORATORS


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    raw = _load_raw_config(path=path)
    return AppConfig.model_validate(raw)


def normalize_config(config: Optional[AppConfig | Dict[str, Any]]) -> AppConfig:
    if config is None:
        return load_app_config()
    if isinstance(config, AppConfig):
        return config
    if isinstance(config, dict):
        raw = apply_legacy_env_overrides(dict(config))
        raw = apply_env_overrides(raw)
        raw = apply_defaults(raw, default_config())
        return AppConfig.model_validate(raw)
    raise TypeError("config must be AppConfig, dict, or None")
