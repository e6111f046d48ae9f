"""
Configuration management.

Uses Pydantic Settings for environment variable handling and validation,
with an optional config.yaml providing defaults that env vars override.
"""

import json
import os
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import BeforeValidator, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


def split_list(value: Any) -> Any:
    """Accept a comma separated string as well as a JSON list."""
    if isinstance(value, str):
        value = value.strip()
        if value.startswith("["):
            return json.loads(value)
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


# List fields read from the environment as "a,b" or a JSON array
StrList = Annotated[List[str], NoDecode, BeforeValidator(split_list)]

_PLACEHOLDER_SECRETS = {
    "",
    "change-me",
    "default-csrf-secret",
    "dev-session-secret-change-me",
    "dev-csrf-secret-change-me",
    "your-secret-key-here-change-in-production",
}


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        possible_paths = [
            os.environ.get("AGROTRACK_CONFIG_FILE", ""),
            "config.yaml",
            "../../config.yaml",
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


class CacheSettings(BaseSettings):
    """Tiered cache configuration (in-process + Redis)."""

    enabled: bool = Field(default=True, description="Use the Redis tier at all")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    memory_ttl_seconds: int = Field(default=300, description="Default local tier TTL")
    redis_ttl_seconds: int = Field(default=3600, description="Default Redis tier TTL")
    memory_max_items: int = Field(default=4096, description="Local tier capacity before it is cleared")
    reconnect_cooldown_seconds: float = Field(default=5.0, description="Minimum gap between reconnect attempts")
    max_reconnect_attempts: int = Field(default=10, description="Give up auto-reconnect after this many failures")
    socket_timeout_seconds: float = Field(default=5.0, description="Redis command timeout")
    connect_timeout_seconds: float = Field(default=10.0, description="Redis connect timeout")

    class Config:
        env_prefix = "AGROTRACK_CACHE_"


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration."""

    enabled: bool = Field(default=True, description="Enable fixed-window rate limiting")
    trust_proxy_headers: bool = Field(default=True, description="Use X-Forwarded-For for client identity")

    class Config:
        env_prefix = "AGROTRACK_RATE_LIMIT_"


class CsrfSettings(BaseSettings):
    """CSRF token configuration."""

    secret: str = Field(default="dev-csrf-secret-change-me", description="HMAC secret for CSRF tokens")
    token_ttl_seconds: int = Field(default=3600, description="CSRF token validity window")
    exempt_paths: StrList = Field(
        default=["/api/auth", "/api/health", "/api/csrf-token"],
        description="Path prefixes that never require a CSRF token",
    )

    class Config:
        env_prefix = "AGROTRACK_CSRF_"


class SoftDeleteSettings(BaseSettings):
    """Soft delete retention configuration."""

    retention_days: int = Field(default=30, description="Purge soft-deleted rows older than this")

    class Config:
        env_prefix = "AGROTRACK_SOFT_DELETE_"


class ApiSettings(BaseSettings):
    """API versioning configuration."""

    current_version: str = Field(default="v1", description="Version served when none is requested")
    supported_versions: StrList = Field(default=["v1"], description="Globally supported versions")

    class Config:
        env_prefix = "AGROTRACK_API_"


class DatabaseSettings(BaseSettings):
    """Relational database configuration."""

    url: str = Field(default="sqlite+aiosqlite:///./agrotrack.db", description="SQLAlchemy async URL")
    echo: bool = Field(default=False, description="Echo SQL statements")

    class Config:
        env_prefix = "AGROTRACK_DATABASE_"


class HealthSettings(BaseSettings):
    """Health check thresholds."""

    memory_limit_mb: int = Field(default=1024, description="Process memory budget used for percentages")
    memory_degraded_percent: int = Field(default=75, description="Memory usage reported as degraded")
    memory_critical_percent: int = Field(default=90, description="Memory usage reported as down")

    class Config:
        env_prefix = "AGROTRACK_HEALTH_"


class Settings(BaseSettings):
    """Main application settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="development, test or production")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Force JSON log output")
    session_secret: str = Field(default="dev-session-secret-change-me", description="Session cookie secret")
    version: str = Field(default="1.0.0", description="Application version reported by /api/health")
    cors_origins: StrList = Field(default=["*"], description="Allowed CORS origins")

    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    csrf: CsrfSettings = Field(default_factory=CsrfSettings)
    soft_delete: SoftDeleteSettings = Field(default_factory=SoftDeleteSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    @field_validator("environment")
    def validate_environment(cls, v: str) -> str:
        value = (v or "development").strip().lower()
        if value not in {"development", "test", "production"}:
            raise ValueError(f"Unknown environment '{v}'")
        return value

    @model_validator(mode="after")
    def check_production_secrets(self) -> "Settings":
        """Refuse to start in production with weak or placeholder secrets."""
        if self.environment != "production":
            return self
        for name, value in (("csrf.secret", self.csrf.secret), ("session_secret", self.session_secret)):
            if value in _PLACEHOLDER_SECRETS:
                raise ValueError(f"{name} must be changed from its default value in production")
            if len(value) < 32:
                raise ValueError(f"{name} must be at least 32 characters in production")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    class Config:
        env_prefix = "AGROTRACK_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    mappings = {
        ("server", "host"): "AGROTRACK_HOST",
        ("server", "port"): "AGROTRACK_PORT",
        ("server", "debug"): "AGROTRACK_DEBUG",
        ("server", "environment"): "AGROTRACK_ENVIRONMENT",
        ("server", "log_level"): "AGROTRACK_LOG_LEVEL",
        ("server", "session_secret"): "AGROTRACK_SESSION_SECRET",
        ("cache", "redis_url"): "AGROTRACK_CACHE_REDIS_URL",
        ("cache", "enabled"): "AGROTRACK_CACHE_ENABLED",
        ("cache", "memory_ttl_seconds"): "AGROTRACK_CACHE_MEMORY_TTL_SECONDS",
        ("cache", "redis_ttl_seconds"): "AGROTRACK_CACHE_REDIS_TTL_SECONDS",
        ("rate_limit", "enabled"): "AGROTRACK_RATE_LIMIT_ENABLED",
        ("rate_limit", "trust_proxy_headers"): "AGROTRACK_RATE_LIMIT_TRUST_PROXY_HEADERS",
        ("csrf", "secret"): "AGROTRACK_CSRF_SECRET",
        ("csrf", "token_ttl_seconds"): "AGROTRACK_CSRF_TOKEN_TTL_SECONDS",
        ("soft_delete", "retention_days"): "AGROTRACK_SOFT_DELETE_RETENTION_DAYS",
        ("api", "current_version"): "AGROTRACK_API_CURRENT_VERSION",
        ("database", "url"): "AGROTRACK_DATABASE_URL",
    }

    for (section, key), env_var in mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Lists go through as JSON
    list_mappings = {
        ("api", "supported_versions"): "AGROTRACK_API_SUPPORTED_VERSIONS",
        ("csrf", "exempt_paths"): "AGROTRACK_CSRF_EXEMPT_PATHS",
        ("server", "cors_origins"): "AGROTRACK_CORS_ORIGINS",
    }
    for (section, key), env_var in list_mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value:
                os.environ[env_var] = json.dumps(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
