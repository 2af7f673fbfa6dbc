import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production
    log_level: str = "INFO"

    # Server
    staffverify_host: str = "0.0.0.0"
    staffverify_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/staffverify.db"

    # Object storage
    object_store_backend: str = "local"  # local | azure
    object_store_path: str = "./data/object_store"
    azure_storage_connection_string: str = ""
    azure_storage_container: str = "verification-uploads"
    public_base_url: str = "http://localhost:8000/api/v1/objects"

    # Storage layout
    verification_prefix: str = "verification/"
    redacted_prefix: str = "verification-redacted/"

    # Auth
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days
    admin_user_ids: str = ""  # Comma-separated user IDs with admin access

    # External storage event webhook
    storage_event_secret: str = "dev-storage-event-secret-change-in-production"

    # Submission
    max_upload_bytes: int = 10 * 1024 * 1024  # 10 MB
    daily_code_prefix: str = "ENG"
    daily_code_timezone: str = "UTC"

    # Enrichment
    redacted_jpeg_quality: int = 90
    matcher_strategy: str = "recency_fallback"  # recency_fallback | time_window | strict
    match_candidate_limit: int = 10
    match_time_window_seconds: int = 5 * 60
    enrichment_retry_attempts: int = 3
    enrichment_retry_backoff_seconds: float = 2.0

    # Location scoring
    geofence_match_m: int = 250
    geofence_near_m: int = 800
    capture_freshness_seconds: int = 10 * 60

    # Reconciliation
    reconciliation_enabled: bool = True
    reconciliation_interval_seconds: int = 10 * 60
    orphan_upload_grace_seconds: int = 60 * 60

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def admin_ids(self) -> set[str]:
        return {i.strip() for i in self.admin_user_ids.split(",") if i.strip()}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("staffverify.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "dev-storage-event-secret-change-in-production",
    "change-me-to-a-random-string",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod:
        if not cfg.storage_event_secret or cfg.storage_event_secret in _INSECURE_SECRETS:
            raise RuntimeError(
                "FATAL: STORAGE_EVENT_SECRET must be set to a strong random value in production."
            )
        if cfg.storage_event_secret == cfg.jwt_secret_key:
            raise RuntimeError(
                "FATAL: STORAGE_EVENT_SECRET must be different from JWT_SECRET_KEY in production."
            )

    if cfg.object_store_backend not in {"local", "azure"}:
        raise RuntimeError(
            f"FATAL: OBJECT_STORE_BACKEND must be 'local' or 'azure', got '{cfg.object_store_backend}'."
        )

    if cfg.matcher_strategy not in {"recency_fallback", "time_window", "strict"}:
        raise RuntimeError(
            f"FATAL: MATCHER_STRATEGY must be 'recency_fallback', 'time_window' or 'strict', "
            f"got '{cfg.matcher_strategy}'."
        )


validate_security_posture(settings)
