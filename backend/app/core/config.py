import json
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Gift Registry API"
    backend_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    environment: str = "local"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./giftregistry.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./giftregistry.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    access_token_expire_minutes: int = 60 * 24 * 7
    # SECURITY: override via JWT_SECRET_KEY env var
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # SMTP settings (optional)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "noreply@giftregistry.local"
    smtp_use_tls: bool = True
    email_notifications_enabled: bool = True

    rate_limit_enabled: bool = True
    rate_limit_requests: int = 10
    rate_limit_window_seconds: int = 60
    guest_rate_limit_requests: int = 5

    # PII encryption: Fernet key (urlsafe base64, 32 bytes). Empty disables encryption.
    pii_encryption_key: str = ""
    pii_key_file: str = ""

    guest_reservation_ttl_days: int = 30
    # 0 disables the in-process expiry sweeper (use scripts/expire_reservations.py from cron)
    reservation_sweep_interval_seconds: int = 0

    log_level: str = "INFO"
    log_file: str = ""

    def validate_secrets(self) -> None:
        """Refuse to start with insecure defaults."""
        if self.jwt_secret_key == "CHANGE_ME":
            raise RuntimeError(
                "JWT_SECRET_KEY is still the default 'CHANGE_ME'. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable."
            )
        if len(self.jwt_secret_key) < 32:
            raise RuntimeError(
                f"JWT_SECRET_KEY is too short ({len(self.jwt_secret_key)} chars). "
                "Minimum 32 characters required."
            )


settings = Settings()
