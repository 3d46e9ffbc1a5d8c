"""
Configuration management for the Redis object store.

This module provides:
- Pydantic-based configuration validation
- Secrets management integration (environment variables)
- TLS/SSL and authentication configuration
- Per-call store options (caching, TTL, write conditions)
"""

import os
import ssl
import logging
from datetime import timedelta
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from enum import Enum

import redis
import redis.asyncio

from vertector_redisobj.keys import DEFAULT_ROOT_PREFIX

logger = logging.getLogger(__name__)


# ============================================================================
# Secrets Management
# ============================================================================

class SecretsProvider(str, Enum):
    """Supported secrets management providers."""
    ENV = "env"


class SecretsManager:
    """
    Interface for retrieving secrets from the configured provider.

    Only environment variables are supported.
    """

    def __init__(self, provider: SecretsProvider = SecretsProvider.ENV):
        self.provider = provider

    def get_secret(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Retrieve a secret from the configured provider.

        Args:
            secret_name: Name/key of the secret
            default: Default value if secret not found

        Returns:
            Secret value or default

        Raises:
            ValueError: If secret not found and no default provided
        """
        if self.provider == SecretsProvider.ENV:
            return self._get_from_env(secret_name, default)
        raise NotImplementedError(f"Provider {self.provider} not yet implemented")

    def _get_from_env(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """Get secret from environment variable."""
        value = os.getenv(secret_name, default)
        if value is None:
            raise ValueError(f"Secret '{secret_name}' not found in environment variables")
        return value


# ============================================================================
# Store Options
# ============================================================================

class WriteCondition(str, Enum):
    """Precondition on the root record key for a write."""
    ALWAYS = "always"
    IF_EXISTS = "if_exists"
    IF_NOT_EXISTS = "if_not_exists"


class StoreOptions(BaseModel):
    """
    Per-call options for reads and writes.

    A zero TTL means no expiry.
    """

    enable_caching: bool = Field(
        default=False,
        description="Skip unchanged records using the content-hash gate"
    )

    ttl: Optional[timedelta] = Field(
        default=None,
        description="Expiry applied to every key written"
    )

    condition: WriteCondition = Field(
        default=WriteCondition.ALWAYS,
        description="Write only if the root record exists / does not exist"
    )

    model_config = ConfigDict(frozen=True)

    @field_validator('ttl')
    @classmethod
    def validate_ttl(cls, v):
        """Reject negative TTLs and normalise zero to no expiry."""
        if v is None:
            return None
        if v < timedelta(0):
            raise ValueError(f"TTL must not be negative, got {v}")
        if v == timedelta(0):
            return None
        if v < timedelta(milliseconds=1):
            raise ValueError(f"TTL must be at least one millisecond, got {v}")
        return v


# ============================================================================
# Configuration Models
# ============================================================================

_VERIFY_MODES = {
    "CERT_NONE": "none",
    "CERT_OPTIONAL": "optional",
    "CERT_REQUIRED": "required",
}

_TLS_VERSIONS = {
    "TLSv1_2": ssl.TLSVersion.TLSv1_2,
    "TLSv1_3": ssl.TLSVersion.TLSv1_3,
}


class TLSConfig(BaseModel):
    """TLS/SSL configuration for secure connections."""

    enabled: bool = Field(
        default=False,
        description="Enable TLS/SSL encryption"
    )

    cert_file: Optional[str] = Field(
        default=None,
        description="Path to client certificate file"
    )

    key_file: Optional[str] = Field(
        default=None,
        description="Path to client private key file"
    )

    ca_cert_file: Optional[str] = Field(
        default=None,
        description="Path to CA certificate file for server verification"
    )

    verify_mode: Literal["CERT_NONE", "CERT_OPTIONAL", "CERT_REQUIRED"] = Field(
        default="CERT_REQUIRED",
        description="Certificate verification mode"
    )

    protocol_version: Literal["TLSv1_2", "TLSv1_3"] = Field(
        default="TLSv1_2",
        description="Minimum TLS protocol version"
    )

    @field_validator('cert_file', 'key_file', 'ca_cert_file')
    @classmethod
    def validate_file_exists(cls, v):
        """Validate that certificate files exist."""
        if v is not None and not os.path.exists(v):
            raise ValueError(f"Certificate file not found: {v}")
        return v

    @model_validator(mode='after')
    def validate_tls_config(self):
        """Validate TLS configuration consistency."""
        if self.enabled:
            if self.verify_mode == "CERT_REQUIRED" and not self.ca_cert_file:
                raise ValueError(
                    "TLS verification requires 'ca_cert_file' when verify_mode is CERT_REQUIRED"
                )

            if self.cert_file and not self.key_file:
                raise ValueError("Client certificate requires private key file")

        return self

    def client_kwargs(self) -> dict[str, Any]:
        """redis-py connection arguments for this TLS setup."""
        if not self.enabled:
            return {}
        return {
            "ssl": True,
            "ssl_certfile": self.cert_file,
            "ssl_keyfile": self.key_file,
            "ssl_ca_certs": self.ca_cert_file,
            "ssl_cert_reqs": _VERIFY_MODES[self.verify_mode],
            "ssl_min_version": _TLS_VERSIONS[self.protocol_version],
        }


class AuthConfig(BaseModel):
    """Authentication configuration for Redis (ACL user or legacy password)."""

    enabled: bool = Field(
        default=False,
        description="Enable authentication"
    )

    username: Optional[str] = Field(
        default=None,
        description="ACL username (omit for the default user)"
    )

    password: Optional[str] = Field(
        default=None,
        description="Password (can use secrets manager)"
    )

    password_secret_name: Optional[str] = Field(
        default=None,
        description="Secret name for password (if using secrets manager)"
    )

    @model_validator(mode='after')
    def validate_auth_config(self):
        """Validate authentication configuration."""
        if self.enabled and not self.password and not self.password_secret_name:
            raise ValueError(
                "Authentication requires either 'password' or 'password_secret_name'"
            )
        return self


class MetricsConfig(BaseModel):
    """Metrics and monitoring configuration."""

    enabled: bool = Field(
        default=True,
        description="Enable metrics collection"
    )

    percentiles: list[float] = Field(
        default=[0.5, 0.95, 0.99],
        description="Latency percentiles to track (p50, p95, p99)"
    )

    @field_validator('percentiles')
    @classmethod
    def validate_percentiles(cls, v):
        """Validate percentile values."""
        for p in v:
            if not 0.0 <= p <= 1.0:
                raise ValueError(f"Percentile must be between 0.0 and 1.0, got {p}")
        return sorted(v)


class TracingConfig(BaseModel):
    """OpenTelemetry tracing configuration."""

    enabled: bool = Field(
        default=False,
        description="Emit spans around store operations"
    )

    service_name: str = Field(
        default="vertector-redisobj",
        description="Service name reported on spans"
    )


class CacheConfig(BaseModel):
    """Defaults for the content-hash gate."""

    enabled: bool = Field(
        default=False,
        description="Enable caching for calls that pass no options"
    )

    default_ttl_seconds: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Expiry for calls that pass no options (0 or None: no expiry)"
    )


class RedisObjStoreConfig(BaseModel):
    """
    Complete configuration for the Redis object stores.

    Example usage:
        config = RedisObjStoreConfig(
            host="redis.example.com",
            root_prefix="myapp",
            auth=AuthConfig(enabled=True, password_secret_name="REDIS_PASSWORD"),
            cache=CacheConfig(enabled=True, default_ttl_seconds=3600),
        )

        store = AsyncRedisObjectStore.from_config(config)
    """

    # Connection settings
    host: str = Field(
        default="localhost",
        description="Redis host"
    )

    port: int = Field(
        default=6379,
        ge=1,
        le=65535,
        description="Redis port"
    )

    db: int = Field(
        default=0,
        ge=0,
        description="Redis logical database"
    )

    root_prefix: str = Field(
        default=DEFAULT_ROOT_PREFIX,
        description="Prefix of every record key"
    )

    socket_timeout: Optional[float] = Field(
        default=5.0,
        gt=0.0,
        description="Socket read/write timeout in seconds"
    )

    query_timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Upper bound per round trip on the async store, in seconds"
    )

    # Security
    auth: AuthConfig = Field(
        default_factory=AuthConfig,
        description="Authentication configuration"
    )

    tls: TLSConfig = Field(
        default_factory=TLSConfig,
        description="TLS/SSL configuration"
    )

    # Monitoring
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Metrics configuration"
    )

    tracing: TracingConfig = Field(
        default_factory=TracingConfig,
        description="Tracing configuration"
    )

    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Cache defaults"
    )

    # Secrets management
    secrets_provider: SecretsProvider = Field(
        default=SecretsProvider.ENV,
        description="Secrets management provider"
    )

    model_config = ConfigDict(
        use_enum_values=True,
        validate_assignment=True
    )

    @field_validator('root_prefix')
    @classmethod
    def validate_root_prefix(cls, v):
        """Root prefix sits inside a hash tag, so no braces or whitespace."""
        if not v or any(c in v for c in "{}") or any(c.isspace() for c in v):
            raise ValueError(
                "Root prefix must be non-empty without braces or whitespace"
            )
        return v

    def get_secrets_manager(self) -> SecretsManager:
        """Get configured secrets manager instance."""
        return SecretsManager(provider=self.secrets_provider)

    def resolve_secrets(self) -> None:
        """
        Resolve all secret references using the configured secrets manager.

        Call after loading config to replace secret references with actual
        values from the secrets provider.
        """
        if self.auth.enabled and self.auth.password_secret_name:
            secrets_manager = self.get_secrets_manager()
            self.auth.password = secrets_manager.get_secret(
                self.auth.password_secret_name
            )
            self.auth.password_secret_name = None

    def client_kwargs(self) -> dict[str, Any]:
        """Connection arguments shared by the sync and async clients."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "socket_timeout": self.socket_timeout,
            "decode_responses": True,
        }
        if self.auth.enabled:
            if self.auth.password_secret_name:
                self.resolve_secrets()
            kwargs["username"] = self.auth.username
            kwargs["password"] = self.auth.password
        kwargs.update(self.tls.client_kwargs())
        return kwargs

    def create_client(self) -> redis.Redis:
        """Build a blocking redis-py client."""
        logger.info(f"Connecting to Redis at {self.host}:{self.port}/{self.db}")
        return redis.Redis(**self.client_kwargs())

    def create_async_client(self) -> redis.asyncio.Redis:
        """Build an asyncio redis-py client."""
        logger.info(f"Connecting to Redis at {self.host}:{self.port}/{self.db} (async)")
        return redis.asyncio.Redis(**self.client_kwargs())

    def default_options(self) -> StoreOptions:
        """StoreOptions used when a call passes none."""
        ttl = None
        if self.cache.default_ttl_seconds:
            ttl = timedelta(seconds=self.cache.default_ttl_seconds)
        return StoreOptions(enable_caching=self.cache.enabled, ttl=ttl)


def load_config_from_env() -> RedisObjStoreConfig:
    """
    Load configuration from environment variables.

    Environment variables:
        REDISOBJ_HOST: Redis host (default: localhost)
        REDISOBJ_PORT: Port (default: 6379)
        REDISOBJ_DB: Logical database (default: 0)
        REDISOBJ_ROOT_PREFIX: Key prefix (default: redisobj)
        REDISOBJ_SOCKET_TIMEOUT: Socket timeout in seconds
        REDISOBJ_QUERY_TIMEOUT: Async round-trip timeout in seconds
        REDISOBJ_AUTH_ENABLED: Enable authentication (true/false)
        REDISOBJ_USERNAME: ACL username
        REDISOBJ_PASSWORD: Password (not recommended - use secret)
        REDISOBJ_PASSWORD_SECRET: Secret name for password
        REDISOBJ_TLS_ENABLED: Enable TLS (true/false)
        REDISOBJ_TLS_CA_CERT: Path to CA certificate
        REDISOBJ_TLS_CERT: Path to client certificate
        REDISOBJ_TLS_KEY: Path to client key
        REDISOBJ_CACHE_ENABLED: Enable caching by default (true/false)
        REDISOBJ_DEFAULT_TTL: Default TTL in seconds
        REDISOBJ_TRACING_ENABLED: Enable tracing (true/false)
        SECRETS_PROVIDER: Secrets provider (env)

    Returns:
        Validated configuration
    """
    def _flag(name: str) -> bool:
        return os.getenv(name, "false").lower() == "true"

    def _seconds(name: str, default: Optional[float]) -> Optional[float]:
        value = os.getenv(name)
        return float(value) if value else default

    config = RedisObjStoreConfig(
        host=os.getenv("REDISOBJ_HOST", "localhost"),
        port=int(os.getenv("REDISOBJ_PORT", "6379")),
        db=int(os.getenv("REDISOBJ_DB", "0")),
        root_prefix=os.getenv("REDISOBJ_ROOT_PREFIX", DEFAULT_ROOT_PREFIX),
        socket_timeout=_seconds("REDISOBJ_SOCKET_TIMEOUT", 5.0),
        query_timeout=_seconds("REDISOBJ_QUERY_TIMEOUT", None),
        auth=AuthConfig(
            enabled=_flag("REDISOBJ_AUTH_ENABLED"),
            username=os.getenv("REDISOBJ_USERNAME"),
            password=os.getenv("REDISOBJ_PASSWORD"),
            password_secret_name=os.getenv("REDISOBJ_PASSWORD_SECRET"),
        ),
        tls=TLSConfig(
            enabled=_flag("REDISOBJ_TLS_ENABLED"),
            ca_cert_file=os.getenv("REDISOBJ_TLS_CA_CERT"),
            cert_file=os.getenv("REDISOBJ_TLS_CERT"),
            key_file=os.getenv("REDISOBJ_TLS_KEY"),
        ),
        cache=CacheConfig(
            enabled=_flag("REDISOBJ_CACHE_ENABLED"),
            default_ttl_seconds=_seconds("REDISOBJ_DEFAULT_TTL", None),
        ),
        tracing=TracingConfig(
            enabled=_flag("REDISOBJ_TRACING_ENABLED"),
        ),
        secrets_provider=SecretsProvider(
            os.getenv("SECRETS_PROVIDER", "env")
        ),
    )

    config.resolve_secrets()

    return config
