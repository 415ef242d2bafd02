import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


# Длина окна rate limit для каждого профиля развертывания (мс)
RATE_LIMIT_PROFILES = {
    "standard": 60_000,
    "fast": 15_000,
}

JOIN_TIME_POLICIES = ("refresh", "preserve")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Конфигурация релея из переменных окружения."""

    # Redis (хранилище записей AbuseRecord и бан-листа)
    redis_enabled: bool = _env_bool("REDIS_ENABLED", "false")
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    redis_db: int = int(os.getenv("REDIS_DB", "0"))
    redis_password: str = os.getenv("REDIS_PASSWORD", "")

    # Database (хранилище сообщений)
    database_url: str = os.getenv(
        "DATABASE_URL", "sqlite+aiosqlite:///./data/relay.db"
    )

    # HTTP
    http_host: str = os.getenv("HTTP_HOST", "0.0.0.0")
    http_port: int = int(os.getenv("HTTP_PORT", "8080"))

    # Abuse gate
    rate_limit_profile: str = os.getenv("RATE_LIMIT_PROFILE", "standard")
    rate_limit_window_override_ms: int | None = (
        int(os.getenv("RATE_LIMIT_WINDOW_MS"))
        if os.getenv("RATE_LIMIT_WINDOW_MS")
        else None
    )
    rate_limit_threshold: int = int(os.getenv("RATE_LIMIT_THRESHOLD", "5"))
    store_fail_closed: bool = _env_bool("STORE_FAIL_CLOSED", "true")
    atomic_record_updates: bool = _env_bool("ATOMIC_RECORD_UPDATES", "true")
    record_update_retries: int = int(os.getenv("RECORD_UPDATE_RETRIES", "5"))
    # 0 = без ограничения числа ников на один адрес
    max_users_per_address: int = int(os.getenv("MAX_USERS_PER_ADDRESS", "0"))

    # Presence
    join_time_policy: str = os.getenv("JOIN_TIME_POLICY", "refresh")

    # Messages
    messages_page_limit: int = int(os.getenv("MESSAGES_PAGE_LIMIT", "100"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_dir: str = os.getenv("LOG_DIR", "logs")

    # Metrics
    metrics_enabled: bool = _env_bool("METRICS_ENABLED", "true")

    def __post_init__(self):
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level}")
        if self.rate_limit_profile not in RATE_LIMIT_PROFILES:
            raise ValueError(f"Unknown rate limit profile: {self.rate_limit_profile}")
        if self.join_time_policy not in JOIN_TIME_POLICIES:
            raise ValueError(f"Unknown join time policy: {self.join_time_policy}")
        if self.rate_limit_threshold < 1:
            raise ValueError("Rate limit threshold must be at least 1")
        if not 1 <= self.messages_page_limit <= 100:
            raise ValueError("Messages page limit must be between 1 and 100")

    # Итоговая длина окна: явное значение важнее профиля
    @property
    def rate_limit_window_ms(self) -> int:
        if self.rate_limit_window_override_ms is not None:
            return self.rate_limit_window_override_ms
        return RATE_LIMIT_PROFILES[self.rate_limit_profile]


settings = Settings()
