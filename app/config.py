from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage: "memory" for local development, "postgres" for deployments
    STORAGE_BACKEND: str = "memory"
    DATABASE_URL: str | None = None

    # Redis dead-letter store (optional)
    REDIS_URL: str | None = None
    DEAD_LETTER_KEY: str = "dispatch:dead_letter"

    # JWT verification (tokens are issued by the external auth service)
    JWT_SECRET: str | None = None
    JWT_JWKS_URL: str | None = None
    JWT_AUDIENCE: str = "authenticated"
    JWT_ALGORITHMS: list[str] = ["HS256", "ES256"]
    PRIVILEGED_ROLES: list[str] = ["hospital", "admin"]

    # Geocoding / routing collaborator
    GEOCODING_BASE_URL: str = "https://nominatim.openstreetmap.org"
    ROUTING_BASE_URL: str = "http://router.project-osrm.org"
    GEO_USER_AGENT: str = "BloodDonorMatching/1.0"
    GEO_TIMEOUT_SECONDS: float = 5.0

    # Notification channels (webhook endpoints of the delivery providers)
    EMAIL_WEBHOOK_URL: str | None = None
    SMS_WEBHOOK_URL: str | None = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # =================================================================
    # DISPATCH PIPELINE
    # =================================================================
    DISPATCH_URGENT_CONCURRENCY: int = 5
    DISPATCH_MATCHING_CONCURRENCY: int = 3
    DISPATCH_NOTIFICATION_CONCURRENCY: int = 10
    DISPATCH_BACKOFF_BASE_SECONDS: float = 1.0
    DISPATCH_BACKOFF_CAP_SECONDS: float = 300.0
    DISPATCH_ARCHIVE_SIZE: int = 1000
    # max attempts per urgency; Low priority jobs are best-effort
    DISPATCH_MAX_ATTEMPTS_EMERGENCY: int = 5
    DISPATCH_MAX_ATTEMPTS_HIGH: int = 3
    DISPATCH_MAX_ATTEMPTS_MEDIUM: int = 3
    DISPATCH_MAX_ATTEMPTS_LOW: int = 2

    # =================================================================
    # MATCHING
    # =================================================================
    MATCH_RANKING_MODE: str = "mixed"
    MATCH_WEIGHT_COMPAT: float = 0.6
    MATCH_WEIGHT_DISTANCE: float = 0.4
    MATCH_MAX_SEARCH_RADIUS_M: float = 100_000.0
    MATCH_DEFAULT_MAX_DISTANCE_M: float = 50_000.0
    MATCH_DEFAULT_DONOR_LIMIT: int = 20
    MATCH_DEFAULT_REQUEST_LIMIT: int = 10
    MATCH_NOTIFY_LIMIT: int = 50
    MATCH_EMERGENCY_ALERT_RADIUS_M: float = 25_000.0
    MATCH_MEETING_POINT_RADIUS_M: float = 5_000.0
    DONATION_COOLDOWN_DAYS: int = 56
    URGENCY_BONUS_EMERGENCY: float = 20.0
    URGENCY_BONUS_HIGH: float = 10.0

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def queue_concurrency(self) -> dict[str, int]:
        """Worker count for every named dispatch queue."""
        return {
            "urgent": self.DISPATCH_URGENT_CONCURRENCY,
            "matching": self.DISPATCH_MATCHING_CONCURRENCY,
            "notification": self.DISPATCH_NOTIFICATION_CONCURRENCY,
        }

    def max_attempts_by_urgency(self) -> dict[str, int]:
        return {
            "Emergency": self.DISPATCH_MAX_ATTEMPTS_EMERGENCY,
            "High": self.DISPATCH_MAX_ATTEMPTS_HIGH,
            "Medium": self.DISPATCH_MAX_ATTEMPTS_MEDIUM,
            "Low": self.DISPATCH_MAX_ATTEMPTS_LOW,
        }

    def ranking_weights(self) -> tuple[float, float]:
        """(compatibility weight, distance weight) of the blended score."""
        return self.MATCH_WEIGHT_COMPAT, self.MATCH_WEIGHT_DISTANCE

    def urgency_bonuses(self) -> dict[str, float]:
        return {
            "Emergency": self.URGENCY_BONUS_EMERGENCY,
            "High": self.URGENCY_BONUS_HIGH,
            "Medium": 0.0,
            "Low": 0.0,
        }

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
