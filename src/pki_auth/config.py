"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets out of source control

All configuration errors surface when AppSettings() is constructed, before
the application accepts a request.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var JWT__SECRET maps to jwt.secret, DATABASE__HOST maps to database.host, etc.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pki_auth.domain.models import POSTMESSAGE_REDIRECT
from pki_auth.keys import MIN_KEY_SIZE
from pki_auth.users import DEFAULT_PHONE_HASH_SALT

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class JwtSettings(BaseModel):
    """Signing of access and ID tokens (HS256)."""

    secret: SecretStr = Field(description="Symmetric JWT signing secret")
    issuer: str = Field(default="https://pki.2check.io", description="Value of the iss claim")
    access_token_ttl_seconds: int = Field(default=3600, ge=60)
    refresh_token_ttl_seconds: int = Field(default=30 * 24 * 3600, ge=60)

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 32:
            raise ValueError("JWT secret must be at least 32 characters")
        return value


class ChallengeSettings(BaseModel):
    ttl_seconds: int = Field(default=300, ge=10, le=3600, description="Challenge lifetime")
    consume_on_failure: bool = Field(
        default=False,
        description="Delete the challenge after a failed signature attempt",
    )


class OAuthSettings(BaseModel):
    """Authorization server behaviour."""

    code_ttl_seconds: int = Field(default=600, ge=30, le=3600)
    default_client_redirect_uris: list[str] = Field(
        default_factory=lambda: [POSTMESSAGE_REDIRECT],
        description="Redirect URIs accepted for the built-in 'default' client",
    )
    login_path: str = Field(
        default="/auth/certificate",
        description="Certificate login UI the authorize endpoint redirects to",
    )
    authoritative_introspection: bool = Field(
        default=True,
        description="Treat a token as inactive once its server-side record is gone",
    )


class CaSettings(BaseModel):
    """
    Certificate authority parameters.

    key_passphrase, when set, encrypts the CA private keys at rest.
    legacy_pkcs12 switches issued containers to 3DES/SHA1 for old importers.
    """

    organization: str = Field(default="2Check")
    country: str = Field(default="KR", min_length=2, max_length=2)
    root_common_name: str = Field(default="2Check Root CA")
    intermediate_common_name: str = Field(default="2Check Intermediate CA")
    root_validity_years: int = Field(default=10, ge=1, le=30)
    intermediate_validity_years: int = Field(default=5, ge=1, le=30)
    leaf_validity_years: int = Field(default=1, ge=1, le=10)
    leaf_key_size: int = Field(default=2048, ge=MIN_KEY_SIZE)
    ca_key_size: int = Field(default=4096, ge=MIN_KEY_SIZE)
    legacy_pkcs12: bool = Field(default=False)
    key_passphrase: SecretStr | None = Field(default=None)

    @model_validator(mode="after")
    def check_validity_nesting(self) -> CaSettings:
        if self.intermediate_validity_years > self.root_validity_years:
            raise ValueError("Intermediate CA must not outlive the root CA")
        if self.leaf_validity_years > self.intermediate_validity_years:
            raise ValueError("Leaf certificates must not outlive the intermediate CA")
        return self


class CorsSettings(BaseModel):
    """
    Allowed browser origins.

    allowed_origins is an exact-match list; allowed_origin_suffix admits any
    https subdomain of that parent domain (e.g. "2check.io").
    """

    allowed_origins: list[str] = Field(default_factory=list)
    allowed_origin_suffix: str | None = Field(default=None)

    def origin_regex(self) -> str | None:
        if not self.allowed_origin_suffix:
            return None
        escaped = self.allowed_origin_suffix.strip(".").replace(".", r"\.")
        return rf"https://([a-z0-9-]+\.)*{escaped}"


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN takes priority when both
    are provided.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )

    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """
        Ensure `dsn` is always populated.

        If DATABASE__DSN is not set, build the DSN from the individual
        component fields. Raises ValueError at startup if neither a full DSN
        nor all required components are provided.
        """
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError(
                "Set DATABASE__DSN or provide all of: "
                + ", ".join(missing)
            )
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class SchedulerSettings(BaseModel):
    """
    Cleanup of expired challenges, codes and tokens, on a 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    Examples:
      "*/15 * * * *" — every 15 minutes (default)
      "0 * * * *"    — hourly
    """

    enabled: bool = Field(default=True)
    cron: str = Field(
        default="*/15 * * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (Kubernetes ConfigMap / Secret)
      2. .env file
      3. Default values

    storage="memory" keeps everything in process (tests, local development);
    storage="postgres" requires the database section.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    jwt: JwtSettings
    admin_secret: SecretStr
    challenge: ChallengeSettings = Field(default_factory=lambda: ChallengeSettings())
    oauth: OAuthSettings = Field(default_factory=lambda: OAuthSettings())
    ca: CaSettings = Field(default_factory=lambda: CaSettings())
    cors: CorsSettings = Field(default_factory=lambda: CorsSettings())
    storage: Literal["postgres", "memory"] = Field(default="postgres")
    database: DatabaseSettings | None = Field(default=None)
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())

    public_url: str = Field(default="http://localhost:8000")
    phone_hash_salt: SecretStr = Field(default=SecretStr(DEFAULT_PHONE_HASH_SALT))
    http_timeout_seconds: int = Field(default=10, ge=1, le=60)
    log_level: str = Field(default="INFO")

    @field_validator("admin_secret")
    @classmethod
    def validate_admin_secret(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 16:
            raise ValueError("Admin secret must be at least 16 characters")
        return value

    @model_validator(mode="after")
    def require_database_for_postgres(self) -> AppSettings:
        if self.storage == "postgres" and self.database is None:
            raise ValueError("storage=postgres requires DATABASE__DSN or DATABASE__HOST etc.")
        return self
