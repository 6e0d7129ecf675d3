"""Settings via pydantic-settings with FLOTILLA_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the database container and the host process.

Timeouts and poll intervals are in milliseconds throughout.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FLOTILLA_", env_file=".env", extra="ignore")

    # DB connection, unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("flotilla", validation_alias="DB_USER")
    db_password: str = Field("flotilla_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("flotilla", validation_alias="DB_NAME")
    # Full URL wins over the DB_* fields (also how tests point at sqlite)
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Identity
    assistant_name: str = "Nano"
    orchestrator_model: str = "anthropic/claude-sonnet-4"
    default_agent_model: str = "anthropic/claude-sonnet-4"

    # Filesystem
    data_dir: str = "data"
    # Bind-mount source for containers when the host process itself runs
    # inside docker and sees the data dir under a different path.
    host_data_dir: str = ""

    # Containers
    container_image: str = "flotilla-agent:latest"
    docker_socket: str = "/var/run/docker.sock"
    container_network: str = "host"
    container_timeout_ms: int = 1_800_000
    orchestrator_ttl_ms: int = 28_800_000
    idle_timeout_ms: int = 1_800_000
    idle_margin_ms: int = 30_000
    container_max_output_bytes: int = 10 * 1024 * 1024
    container_stop_grace_s: int = 10
    orphan_stop_grace_s: int = 5
    max_concurrent_containers: int = 5

    # In-container mount point of the agent's IPC directory
    container_ipc_dir: str = "/workspace/ipc"

    # Polling
    ipc_poll_interval_ms: int = 1000
    agent_ipc_poll_interval_ms: int = 500
    scheduler_poll_interval_ms: int = 60_000
    timezone: str = "UTC"

    # LLM (used inside agent containers)
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_temperature: float = 0.7
    llm_timeout_connect: int = 10  # seconds
    llm_timeout_read: int = 300  # seconds
    max_agent_iterations: int = 50

    # Secrets: plain values or op:// references
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")
    openrouter_api_key_ref: str = Field("", validation_alias="OPENROUTER_API_KEY_REF")
    database_url_ref: str = Field("", validation_alias="DATABASE_URL_REF")
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_bot_token_ref: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN_REF")
    telegram_allowed_chats: str = ""  # comma-separated chat ids, empty = allow all

    # Embeddings
    embedding_api_key: str = Field("", validation_alias="EMBEDDING_API_KEY")
    embedding_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "openai/text-embedding-3-small"
    embedding_dimensions: int = 1536

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_concurrent_containers < 1:
            raise ValueError("max_concurrent_containers must be >= 1")
        for name in (
            "container_timeout_ms",
            "orchestrator_ttl_ms",
            "idle_timeout_ms",
            "ipc_poll_interval_ms",
            "agent_ipc_poll_interval_ms",
            "scheduler_poll_interval_ms",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            # libpq-style URLs (as compose files write them) need the async driver
            scheme, sep, rest = self.database_url.partition("://")
            if sep and scheme in ("postgres", "postgresql"):
                return f"postgresql+asyncpg://{rest}"
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).resolve()

    @property
    def host_data_path(self) -> Path:
        """Data dir as seen by the docker daemon (for bind mounts)."""
        return Path(self.host_data_dir).resolve() if self.host_data_dir else self.data_path

    @property
    def ipc_root(self) -> Path:
        return self.data_path / "ipc"

    @property
    def allowed_chat_ids(self) -> set[int] | None:
        ids = {int(c) for c in self.telegram_allowed_chats.split(",") if c.strip()}
        return ids or None
