"""
Vertector Redis Object Store - nested records mapped onto Redis.

This package maps dataclass and pydantic record instances onto Redis
hashes, sorted sets and strings, batching every call into a single
pipeline and optionally skipping unchanged records by content hash.
"""

from vertector_redisobj.store import (
    RedisObjectStore,
    AsyncRedisObjectStore,
    BaseObjectStore,
    PlanCache,
)

from vertector_redisobj.errors import (
    RedisObjError,
    InvalidObjectError,
    InvalidFieldTypeError,
    InvalidDefinitionError,
    ObjectNotFoundError,
    CacheFailureError,
    RedisCommandError,
    StoreTimeoutError,
)

from vertector_redisobj.plan import (
    Key,
    key_field,
    FieldKind,
    FieldPlan,
    RecordPlan,
    PlanCompiler,
)

from vertector_redisobj.codec import (
    ScalarKind,
    Int8,
    Int16,
    Int32,
    Int64,
    UInt8,
    UInt16,
    UInt32,
    UInt64,
    Float32,
    Float64,
)

from vertector_redisobj.keys import KeyDeriver
from vertector_redisobj.cache import CacheGate
from vertector_redisobj.executor import BatchedExecutor, CommandBatch

from vertector_redisobj.config import (
    RedisObjStoreConfig,
    StoreOptions,
    WriteCondition,
    AuthConfig,
    TLSConfig,
    MetricsConfig,
    TracingConfig,
    CacheConfig,
    SecretsManager,
    SecretsProvider,
    load_config_from_env,
)

from vertector_redisobj.observability import (
    Tracer,
    EnhancedMetrics,
    configure_tracing,
)

from vertector_redisobj.logging_utils import setup_production_logging

__version__ = "1.0.0"

__all__ = [
    # Stores
    "RedisObjectStore",
    "AsyncRedisObjectStore",
    "BaseObjectStore",
    "PlanCache",
    # Errors
    "RedisObjError",
    "InvalidObjectError",
    "InvalidFieldTypeError",
    "InvalidDefinitionError",
    "ObjectNotFoundError",
    "CacheFailureError",
    "RedisCommandError",
    "StoreTimeoutError",
    # Record definitions
    "Key",
    "key_field",
    "FieldKind",
    "FieldPlan",
    "RecordPlan",
    "PlanCompiler",
    "ScalarKind",
    "Int8",
    "Int16",
    "Int32",
    "Int64",
    "UInt8",
    "UInt16",
    "UInt32",
    "UInt64",
    "Float32",
    "Float64",
    # Engine
    "KeyDeriver",
    "CacheGate",
    "BatchedExecutor",
    "CommandBatch",
    # Configuration
    "RedisObjStoreConfig",
    "StoreOptions",
    "WriteCondition",
    "AuthConfig",
    "TLSConfig",
    "MetricsConfig",
    "TracingConfig",
    "CacheConfig",
    "SecretsManager",
    "SecretsProvider",
    "load_config_from_env",
    # Observability
    "Tracer",
    "EnhancedMetrics",
    "configure_tracing",
    "setup_production_logging",
]
