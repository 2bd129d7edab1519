import json
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Giftify API"
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
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./giftify.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./giftify.db"
    redis_dsn: str = "redis://localhost:6379/0"

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    access_token_expire_minutes: int = 60 * 24 * 7
    refresh_token_expire_minutes: int = 60 * 24 * 30
    # SECURITY: override via JWT_SECRET_KEY env var outside local environment
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # Accounts can only be created with an invite code from an existing user
    invite_only_signup: bool = True
    invite_code_ttl_days: int = 7

    rate_limit_enabled: bool = True
    rate_limit_requests: int = 10
    rate_limit_window_seconds: int = 60
    rate_limit_login_requests: int = 5
    rate_limit_invite_requests: int = 20

    # Item image storage
    media_root: str = "media"
    media_path: str = "/media"
    item_images_bucket: str = "item-images"
    image_upload_max_mb: int = 5

    # Link metadata scraping
    link_metadata_timeout_seconds: float = 10.0
    link_metadata_cache_ttl_seconds: int = 3600

    # Per-user view cache (dashboard stats, wishlist lists)
    view_cache_enabled: bool = True
    view_cache_ttl_seconds: int = 60

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
