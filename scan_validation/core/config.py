from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    db_isolation_level: str = Field("SERIALIZABLE", alias="DB_ISOLATION_LEVEL")
    db_statement_timeout_ms: int = Field(500, alias="DB_STATEMENT_TIMEOUT_MS")
    db_pool_size: int = Field(10, alias="DB_POOL_SIZE")

    request_deadline_ms: int = Field(2000, alias="REQUEST_DEADLINE_MS")
    transient_retry_limit: int = Field(3, alias="TRANSIENT_RETRY_LIMIT")

    # Rate limiter
    rate_limit_capacity: int = Field(5, alias="RATE_LIMIT_CAPACITY")
    rate_limit_refill_per_sec: float = Field(1.0, alias="RATE_LIMIT_REFILL_PER_SEC")
    rate_limit_idle_ttl_sec: int = Field(300, alias="RATE_LIMIT_IDLE_TTL_SEC")
    rate_limit_backend: str = Field("memory", alias="RATE_LIMIT_BACKEND")

    # Policy
    min_scan_interval_ms: int = Field(30000, alias="MIN_SCAN_INTERVAL_MS")
    batch_max_items: int = Field(50, alias="BATCH_MAX_ITEMS")

    # QR payloads
    qr_supported_versions_raw: str = Field("v1", alias="QR_SUPPORTED_VERSIONS")
    qr_secret: str | None = Field(default=None, alias="QR_SECRET")

    # Internal caller auth (disabled when no JWKS url)
    auth_jwks_url: str | None = Field(default=None, alias="AUTH_JWKS_URL")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_admitted: str = Field("tickets.admitted", alias="NATS_SUBJECT_ADMITTED")
    nats_publish_enabled: bool = Field(default=False, alias="NATS_PUBLISH_ENABLED")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False
        populate_by_name = True

    @property
    def qr_supported_versions(self) -> frozenset[str]:
        return frozenset(v.strip() for v in self.qr_supported_versions_raw.split(",") if v.strip())

    @property
    def request_deadline_sec(self) -> float:
        return self.request_deadline_ms / 1000.0

    @property
    def min_scan_interval_sec(self) -> float:
        return self.min_scan_interval_ms / 1000.0

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
