from dataclasses import dataclass
import os

DEFAULT_COLLECTOR_INSTITUTIONS = (
    "Universidade Federal de Mato Grosso do Sul,"
    "Universidade Catolica Dom Bosco,"
    "Universidade Estadual de Mato Grosso do Sul,"
    "Instituto Federal de Mato Grosso do Sul"
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


def parse_csv_list(raw: str | None) -> tuple[str, ...]:
    return tuple(item.strip() for item in (raw or "").split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "profilehub")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://profilehub:profilehub@db:5432/profilehub",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_requests: bool = _env_bool("LOG_REQUESTS", True)
    log_uvicorn_access: bool = _env_bool("LOG_UVICORN_ACCESS", False)
    log_request_skip_paths: str = _env_str("LOG_REQUEST_SKIP_PATHS", "/healthz")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    scheduler_enabled: bool = _env_bool("SCHEDULER_ENABLED", True)
    scheduler_tick_seconds: int = _env_int("SCHEDULER_TICK_SECONDS", 60)
    scheduler_dispatch_attempts: int = _env_int("SCHEDULER_DISPATCH_ATTEMPTS", 3)
    scheduler_dispatch_backoff_seconds: float = _env_float(
        "SCHEDULER_DISPATCH_BACKOFF_SECONDS",
        1.0,
    )
    scheduler_dispatch_max_backoff_seconds: float = _env_float(
        "SCHEDULER_DISPATCH_MAX_BACKOFF_SECONDS",
        30.0,
    )
    scheduler_shutdown_grace_seconds: float = _env_float(
        "SCHEDULER_SHUTDOWN_GRACE_SECONDS",
        10.0,
    )
    collector_inter_target_delay_seconds: float = _env_float(
        "COLLECTOR_INTER_TARGET_DELAY_SECONDS",
        3.0,
    )
    collector_fetch_timeout_seconds: float = _env_float(
        "COLLECTOR_FETCH_TIMEOUT_SECONDS",
        300.0,
    )
    collector_progress_flush_interval: int = _env_int(
        "COLLECTOR_PROGRESS_FLUSH_INTERVAL",
        5,
    )
    collector_max_error_messages: int = _env_int("COLLECTOR_MAX_ERROR_MESSAGES", 50)
    collector_institutions: str = _env_str(
        "COLLECTOR_INSTITUTIONS",
        DEFAULT_COLLECTOR_INSTITUTIONS,
    )
    source_http_timeout_seconds: float = _env_float("SOURCE_HTTP_TIMEOUT_SECONDS", 60.0)
    source_http_attempts: int = _env_int("SOURCE_HTTP_ATTEMPTS", 3)
    source_http_user_agent: str = _env_str("SOURCE_HTTP_USER_AGENT", "profilehub-collector/1.0")
    activity_log_max_entries: int = _env_int("ACTIVITY_LOG_MAX_ENTRIES", 100)
    activity_log_subscriber_queue_size: int = _env_int(
        "ACTIVITY_LOG_SUBSCRIBER_QUEUE_SIZE",
        256,
    )
    sucupira_endpoint_url: str = _env_str("SUCUPIRA_ENDPOINT_URL", "")
    sucupira_interval_minutes: int = _env_int("SUCUPIRA_INTERVAL_MINUTES", 1440)
    bdtd_endpoint_url: str = _env_str("BDTD_ENDPOINT_URL", "")
    bdtd_interval_minutes: int = _env_int("BDTD_INTERVAL_MINUTES", 10_080)
    ufms_endpoint_url: str = _env_str("UFMS_ENDPOINT_URL", "")
    ufms_interval_minutes: int = _env_int("UFMS_INTERVAL_MINUTES", 43_200)
    discovery_endpoint_url: str = _env_str("DISCOVERY_ENDPOINT_URL", "")
    discovery_interval_minutes: int = _env_int("DISCOVERY_INTERVAL_MINUTES", 360)
    discovery_batch_size: int = _env_int("DISCOVERY_BATCH_SIZE", 10)
    discovery_inter_target_delay_seconds: float = _env_float(
        "DISCOVERY_INTER_TARGET_DELAY_SECONDS",
        5.0,
    )


settings = Settings()
