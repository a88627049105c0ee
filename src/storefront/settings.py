"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
Thresholds, windows and skip-lists of the security pipeline live here as
named fields so they can be tuned per environment.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RouteClassConfig(BaseModel):
    """Fixed-window limit applied to one class of routes."""

    name: str = Field(description="Route class name used in counter keys")
    path_prefixes: list[str] = Field(description="Path prefixes belonging to this class")
    window_seconds: int = Field(gt=0, description="Window length in seconds")
    max_requests: int = Field(gt=0, description="Requests admitted per window")
    message: str = Field(description="Message returned when the cap is hit")


class ActionRule(BaseModel):
    """Heuristic mapping from a path substring to an audit action."""

    substring: str
    action: str


def _default_route_classes() -> list[RouteClassConfig]:
    return [
        RouteClassConfig(
            name="auth",
            path_prefixes=[
                "/api/auth/login",
                "/api/auth/register",
                "/api/auth/forgot-password",
                "/api/auth/verify-otp",
                "/api/auth/reset-password",
            ],
            window_seconds=15 * 60,
            max_requests=50,
            message="Too many authentication attempts. Please try again in 15 minutes.",
        ),
        RouteClassConfig(
            name="strict",
            path_prefixes=["/api/security/invalidate-sessions", "/api/auth/delete-account"],
            window_seconds=60 * 60,
            max_requests=10,
            message="Rate limit exceeded. Please try again in 1 hour.",
        ),
        RouteClassConfig(
            name="general",
            path_prefixes=["/api/"],
            window_seconds=15 * 60,
            max_requests=100,
            message="Too many requests. Please try again in 15 minutes.",
        ),
    ]


def _default_action_rules() -> list[ActionRule]:
    # Order matters: the first matching substring wins.
    pairs = [
        ("/login", "login"),
        ("/register", "register"),
        ("/logout", "logout"),
        ("/password", "password_change"),
        ("/profile", "profile_update"),
        ("/orders", "order_create"),
        ("/payment", "payment_success"),
        ("/admin", "admin_action"),
        ("/products", "product_view"),
        ("/users", "user_management"),
        ("/logs", "log_view"),
    ]
    return [ActionRule(substring=substring, action=action) for substring, action in pairs]


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: SECURITY__BRUTE_FORCE__MAX_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("storefront-security", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    host: str = Field("0.0.0.0", description="Server host")  # nosec B104
    port: int = Field(5000, description="Server port")

    secret_key: str = Field("change-me-in-production", description="Secret key for signing")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async SQLAlchemy database URL")
        sqlite_path: str = Field("./storefront.sqlite", description="Development SQLite file")

        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

        @property
        def async_url(self) -> str:
            """Async SQLAlchemy URL, falling back to a local SQLite file."""
            if self.url:
                url = self.url
                if url.startswith("postgresql://"):
                    return url.replace("postgresql://", "postgresql+asyncpg://", 1)
                if url.startswith("sqlite://"):
                    return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
                return url
            return f"sqlite+aiosqlite:///{self.sqlite_path}"

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration for shared counters and sessions."""

        enabled: bool = Field(False, description="Use Redis instead of in-process stores")
        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")
        max_connections: int = Field(50, description="Max connections in pool")
        key_prefix: str = Field("storefront", description="Prefix for all keys")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return self.url
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Security Pipeline
    # ============================================================

    class SecuritySettings(BaseModel):
        """Rate limiting, brute-force, CSRF, session and lockout configuration."""

        class RateLimitSettings(BaseModel):
            """Fixed-window rate limiting."""

            enabled: bool = Field(True, description="Enable rate limiting")
            trust_forwarded_headers: bool = Field(
                False,
                description=(
                    "Bucket rate-limit and brute-force callers by X-Forwarded-For / X-Real-IP "
                    "instead of the socket peer. Enable only behind a proxy that overwrites "
                    "those headers"
                ),
            )
            route_classes: list[RouteClassConfig] = Field(
                default_factory=_default_route_classes,
                description="Route classes, first matching prefix wins",
            )

        class BruteForceSettings(BaseModel):
            """Per-address authentication attempt gate."""

            enabled: bool = Field(True, description="Enable brute-force protection")
            protected_paths: list[str] = Field(
                default_factory=lambda: [
                    "/api/auth/login",
                    "/api/auth/forgot-password",
                    "/api/auth/verify-otp",
                    "/api/auth/reset-password",
                ],
                description="Paths gated by the guard",
            )
            methods: list[str] = Field(
                default_factory=lambda: ["POST"], description="Gated HTTP methods"
            )
            max_attempts: int = Field(5, gt=0, description="Attempts admitted per window")
            window_seconds: int = Field(15 * 60, gt=0, description="Rolling lockout window")
            message: str = Field(
                "Account temporarily locked due to too many failed attempts. "
                "Please try again in 15 minutes.",
                description="Message returned when blocked",
            )

        class CSRFSettings(BaseModel):
            """Anti-forgery token validation."""

            enabled: bool = Field(True, description="Enable CSRF validation")
            header_names: list[str] = Field(
                default_factory=lambda: ["X-CSRF-Token", "CSRF-Token"],
                description="Headers carrying the client token",
            )
            safe_methods: list[str] = Field(
                default_factory=lambda: ["GET", "HEAD", "OPTIONS"],
                description="Methods that bypass validation",
            )
            exempt_paths: list[str] = Field(default_factory=list, description="Exempt paths")
            token_bytes: int = Field(32, ge=16, description="Random bytes per token")
            token_path: str = Field("/api/csrf-token", description="Token fetch endpoint")
            message: str = Field("CSRF token validation failed")

        class SessionSettings(BaseModel):
            """Server-side session configuration."""

            cookie_name: str = Field("storefront_session", description="Session cookie name")
            ttl_seconds: int = Field(24 * 60 * 60, gt=0, description="Session lifetime")
            secure_cookie: bool = Field(False, description="Set the Secure cookie flag")
            same_site: str = Field("strict", description="SameSite cookie policy")

        class LockoutSettings(BaseModel):
            """Account lock state machine configuration."""

            admin_lock_seconds: int = Field(24 * 60 * 60, gt=0, description="Admin lock duration")
            auto_lock_threshold: int = Field(15, gt=0, description="Failed logins before auto-lock")
            auto_lock_seconds: int = Field(15 * 60, gt=0, description="Auto-lock duration")
            password_max_age_days: int = Field(90, gt=0, description="Password rotation period")

        rate_limit: RateLimitSettings = RateLimitSettings()  # type: ignore[call-arg]
        brute_force: BruteForceSettings = BruteForceSettings()  # type: ignore[call-arg]
        csrf: CSRFSettings = CSRFSettings()  # type: ignore[call-arg]
        session: SessionSettings = SessionSettings()  # type: ignore[call-arg]
        lockout: LockoutSettings = LockoutSettings()  # type: ignore[call-arg]

    security: SecuritySettings = SecuritySettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit Trail
    # ============================================================

    class AuditSettings(BaseModel):
        """Activity recording and dashboard configuration."""

        enabled: bool = Field(True, description="Record activity for every request")
        trust_forwarded_headers: bool = Field(
            True, description="Record the forwarded client address instead of the socket peer"
        )
        skip_paths: list[str] = Field(
            default_factory=lambda: ["/api/health", "/api/csrf-token", "/favicon.ico"],
            description="Paths that never produce a record",
        )
        action_rules: list[ActionRule] = Field(
            default_factory=_default_action_rules,
            description="Heuristic fallback for routes without a declared action",
        )
        security_event_actions: list[str] = Field(
            default_factory=lambda: [
                "login",
                "password_change",
                "password_reset",
                "security_event",
            ],
            description="Actions shown in the security event feed",
        )
        security_events_limit: int = Field(100, gt=0, description="Max security events returned")
        failed_logins_limit: int = Field(100, gt=0, description="Max failed logins returned")
        recent_activity_limit: int = Field(10, gt=0, description="Records in system stats")
        login_identifier_field: str = Field(
            "email", description="Body field used to attribute login attempts"
        )

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str, info: Any) -> str:
        """Validate secret key."""
        if (
            v == "change-me-in-production"
            and info.data.get("environment") == Environment.PRODUCTION
        ):
            raise ValueError("Secret key must be changed in production")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
