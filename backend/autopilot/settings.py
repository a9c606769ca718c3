from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "content-autopilot"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "AUTOPILOT_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/autopilot",
        validation_alias=AliasChoices("DATABASE_URL", "AUTOPILOT_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "AUTOPILOT_REDIS_URL"))

    # Job store TTLs
    job_ttl_sec: int = Field(default=7200, validation_alias=AliasChoices("JOB_TTL_SEC", "AUTOPILOT_JOB_TTL_SEC"))
    performance_ttl_sec: int = Field(default=30 * 24 * 3600, validation_alias=AliasChoices("PERFORMANCE_TTL_SEC", "AUTOPILOT_PERFORMANCE_TTL_SEC"))

    # Worker pools
    generation_concurrency: int = Field(default=5, validation_alias=AliasChoices("GENERATION_CONCURRENCY", "AUTOPILOT_GENERATION_CONCURRENCY"))
    publishing_concurrency: int = Field(default=3, validation_alias=AliasChoices("PUBLISHING_CONCURRENCY", "AUTOPILOT_PUBLISHING_CONCURRENCY"))
    tracking_concurrency: int = Field(default=2, validation_alias=AliasChoices("TRACKING_CONCURRENCY", "AUTOPILOT_TRACKING_CONCURRENCY"))
    task_max_attempts: int = Field(default=3, validation_alias=AliasChoices("TASK_MAX_ATTEMPTS", "AUTOPILOT_TASK_MAX_ATTEMPTS"))
    generation_stagger_ms: int = Field(default=1000, validation_alias=AliasChoices("GENERATION_STAGGER_MS", "AUTOPILOT_GENERATION_STAGGER_MS"))
    delayed_poll_interval_sec: float = Field(default=1.0, validation_alias=AliasChoices("DELAYED_POLL_INTERVAL_SEC", "AUTOPILOT_DELAYED_POLL_INTERVAL_SEC"))
    delayed_promote_batch: int = Field(default=100, validation_alias=AliasChoices("DELAYED_PROMOTE_BATCH", "AUTOPILOT_DELAYED_PROMOTE_BATCH"))
    task_time_limit_sec: int = Field(default=15 * 60, validation_alias=AliasChoices("TASK_TIME_LIMIT_SEC", "AUTOPILOT_TASK_TIME_LIMIT_SEC"))
    redis_semaphore_ttl_sec: int = Field(default=1800, validation_alias=AliasChoices("REDIS_SEMAPHORE_TTL_SEC", "AUTOPILOT_REDIS_SEMAPHORE_TTL_SEC"))
    semaphore_wait_timeout_sec: int = Field(default=600, validation_alias=AliasChoices("SEMAPHORE_WAIT_TIMEOUT_SEC", "AUTOPILOT_SEMAPHORE_WAIT_TIMEOUT_SEC"))

    # Destination sites
    sites_config_path: str | None = Field(default=None, validation_alias=AliasChoices("SITES_CONFIG_PATH", "AUTOPILOT_SITES_CONFIG_PATH"))
    default_site_id: str | None = Field(default="main", validation_alias=AliasChoices("DEFAULT_SITE_ID", "AUTOPILOT_DEFAULT_SITE_ID"))
    wordpress_wedding_url: str = Field(default="https://wedding.guustudio.vn", validation_alias=AliasChoices("WORDPRESS_WEDDING_URL", "AUTOPILOT_WORDPRESS_WEDDING_URL"))
    wordpress_wedding_username: str = Field(default="admin", validation_alias=AliasChoices("WORDPRESS_WEDDING_USERNAME", "AUTOPILOT_WORDPRESS_WEDDING_USERNAME"))
    wordpress_wedding_password: str | None = Field(default=None, validation_alias=AliasChoices("WORDPRESS_WEDDING_PASSWORD", "AUTOPILOT_WORDPRESS_WEDDING_PASSWORD"))
    wordpress_yearbook_url: str = Field(default="https://guukyyeu.vn", validation_alias=AliasChoices("WORDPRESS_YEARBOOK_URL", "AUTOPILOT_WORDPRESS_YEARBOOK_URL"))
    wordpress_yearbook_username: str = Field(default="admin", validation_alias=AliasChoices("WORDPRESS_YEARBOOK_USERNAME", "AUTOPILOT_WORDPRESS_YEARBOOK_USERNAME"))
    wordpress_yearbook_password: str | None = Field(default=None, validation_alias=AliasChoices("WORDPRESS_YEARBOOK_PASSWORD", "AUTOPILOT_WORDPRESS_YEARBOOK_PASSWORD"))
    wordpress_main_url: str = Field(default="https://guustudio.vn", validation_alias=AliasChoices("WORDPRESS_MAIN_URL", "AUTOPILOT_WORDPRESS_MAIN_URL"))
    wordpress_main_username: str = Field(default="admin", validation_alias=AliasChoices("WORDPRESS_MAIN_USERNAME", "AUTOPILOT_WORDPRESS_MAIN_USERNAME"))
    wordpress_main_password: str | None = Field(default=None, validation_alias=AliasChoices("WORDPRESS_MAIN_PASSWORD", "AUTOPILOT_WORDPRESS_MAIN_PASSWORD"))
    publisher_timeout_sec: int = Field(default=60, validation_alias=AliasChoices("PUBLISHER_TIMEOUT_SEC", "AUTOPILOT_PUBLISHER_TIMEOUT_SEC"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    def pool_concurrency(self, pool: str) -> int:
        return {
            "generation": self.generation_concurrency,
            "publishing": self.publishing_concurrency,
            "tracking": self.tracking_concurrency,
        }[pool]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
