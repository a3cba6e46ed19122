"""
Service configuration.
All settings are loaded from environment variables (or a local .env file).
"""
import json
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Product


class Settings(BaseSettings):
    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma separated. Empty = allow all origins.
    cors_origins: str = ""

    # ===========================================
    # DATABASE
    # ===========================================
    # Empty = in-memory ledger (single process only).
    database_url: str = ""
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_connect_timeout: int = 5

    # ===========================================
    # AUTH
    # ===========================================
    # Dev mode accepts a single shared bearer token instead of a Firebase ID token.
    dev_auth_enabled: bool = False
    dev_auth_token: str = ""
    dev_auth_uid: str = "dev-user-uid-123"
    # Signed ID tokens (Firebase: RS256 public key, audience = project id).
    auth_jwt_key: str = ""
    auth_jwt_algorithms: str = "RS256"
    auth_jwt_audience: str = ""
    # Comma separated uids allowed on /admin routes. Empty = any authenticated user.
    admin_user_ids: str = ""

    # ===========================================
    # CREDITS
    # ===========================================
    reward_credits: int = 1
    reward_daily_cap: Optional[int] = None  # None = unlimited rewarded-ad grants
    signup_bonus_credits: int = 0
    history_default_limit: int = 20
    history_max_limit: int = 100
    # JSON list of products seeded into the catalog on startup, e.g.
    # [{"product_id": "credits.pack.10", "name": "10 credits", "credits": 10}]
    iap_products: str = "[]"

    # ===========================================
    # STOREKIT
    # ===========================================
    verify_jws_signature: bool = False
    storekit_public_key: str = ""

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("reward_credits", "history_default_limit", "history_max_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("signup_bonus_credits")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("signup_bonus_credits cannot be negative")
        return v

    @field_validator("iap_products")
    @classmethod
    def validate_products_json(cls, v: str) -> str:
        parsed = json.loads(v or "[]")
        if not isinstance(parsed, list):
            raise ValueError("iap_products must be a JSON list")
        return v or "[]"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def admin_user_ids_list(self) -> list[str]:
        return [u.strip() for u in self.admin_user_ids.split(",") if u.strip()]

    @property
    def auth_jwt_algorithms_list(self) -> list[str]:
        return [a.strip() for a in self.auth_jwt_algorithms.split(",") if a.strip()]

    @property
    def seed_products(self) -> list[Product]:
        return [Product(**p) for p in json.loads(self.iap_products)]
