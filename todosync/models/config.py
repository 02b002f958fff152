"""Configuration models for the vault/To Do synchronizer."""

from pydantic import BaseModel, Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphConfig(BaseModel):
    """Configuration for the Microsoft Graph To Do connection."""

    base_url: HttpUrl = Field(
        default="https://graph.microsoft.com/v1.0", description="Graph API root"
    )
    access_token: str = Field(default=..., description="Bearer token for the Graph API")
    application_name: str = Field(
        default="Obsidian Microsoft To Do Sync",
        description="Application name recorded on linked resources",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP request timeout")


class VaultConfig(BaseModel):
    """Configuration for the local Markdown vault."""

    root: str = Field(default=..., description="Vault root directory")
    vault_name: str | None = Field(
        default=None, description="Vault name used to build obsidian:// links"
    )
    inbox_path: str = Field(
        default="Microsoft To Do.md", description="File new remote tasks are appended to"
    )
    poll_interval_seconds: float = Field(
        default=2.0, gt=0, description="How often the watcher checks for modified files"
    )


class SyncConfig(BaseModel):
    """Timing and policy for synchronization."""

    anchor_prefix: str = Field(
        default="MSTD", pattern=r"^[A-Za-z0-9]+$", description="Anchor token prefix"
    )
    default_list_id: str | None = Field(
        default=None, description="List new local tasks are pushed to"
    )
    list_ids: list[str] = Field(
        default_factory=list, description="Lists to sync; empty means every remote list"
    )
    pull_completed: bool = Field(
        default=False, description="Also pull new remote tasks that are already completed"
    )
    min_interval_seconds: float = Field(
        default=60.0, ge=0, description="Minimum time between vault syncs"
    )
    debounce_seconds: float = Field(default=3.0, ge=0, description="File-save debounce window")
    cooldown_seconds: float = Field(
        default=10.0, ge=0, description="Per-file suppression after a sync it caused"
    )
    startup_delay_seconds: float = Field(
        default=5.0, ge=0, description="Delay before the initial sync"
    )
    auto_sync_minutes: float = Field(
        default=0, ge=0, description="Periodic sync interval in minutes, 0 disables"
    )
    inter_list_delay_seconds: float = Field(
        default=1.0, ge=0, description="Pause between lists during a vault sync"
    )
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries for transient errors")
    retry_base_delay: float = Field(default=1.0, ge=0, description="Initial backoff in seconds")
    retry_max_delay: float = Field(default=30.0, ge=0, description="Backoff ceiling in seconds")


class CacheConfig(BaseModel):
    """Configuration for the persisted identity cache."""

    path: str = Field(default=".todosync/cache.json", description="Cache file location")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Values can be overridden with environment variables using the TODOSYNC_
    prefix and ``__`` for nesting, e.g. ``TODOSYNC_SYNC__DEFAULT_LIST_ID``.
    """

    model_config = SettingsConfigDict(
        env_prefix="TODOSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    graph: GraphConfig
    vault: VaultConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
