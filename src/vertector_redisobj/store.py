"""
Redis object stores.

RedisObjectStore (blocking) and AsyncRedisObjectStore (asyncio) map
dataclass and pydantic record instances onto Redis hashes, sorted sets and
strings:

    @dataclass
    class User:
        id: Annotated[str, Key] = ""
        name: str = ""
        tags: list[str] = field(default_factory=list)

    store = RedisObjectStore(redis.Redis())
    store.write(User(id="u1", name="Ada", tags=["admin"]))

    user = User(id="u1")
    store.read(user)

Both stores run the same call flow; only the way a pipeline is executed
differs. The flow is a generator that yields each pipeline to the driver
and receives its results (or the exception it raised) back:

    validate -> plan -> [EXISTS] -> [hash exchange] -> data pipeline -> consumers

Every call costs at most three round trips, independent of how many fields
and nested records the object has.
"""

import asyncio
import logging
import threading
import time
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Iterator

from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from vertector_redisobj.cache import CacheGate, FreshnessProbe
from vertector_redisobj.config import RedisObjStoreConfig, StoreOptions, WriteCondition
from vertector_redisobj.errors import (
    CacheFailureError,
    InvalidDefinitionError,
    InvalidObjectError,
    ObjectNotFoundError,
    RedisCommandError,
    RedisObjError,
    StoreTimeoutError,
)
from vertector_redisobj.executor import BatchedExecutor, Boundary, CommandBatch
from vertector_redisobj.keys import DEFAULT_ROOT_PREFIX, KeyDeriver
from vertector_redisobj.logging_utils import PerformanceLogger
from vertector_redisobj.observability import EnhancedMetrics, Tracer
from vertector_redisobj.plan import PlanCompiler, RecordPlan, is_record_instance

logger = logging.getLogger(__name__)

# Exceptions a driver hands back into the flow
_DRIVER_ERRORS = (RedisError, TimeoutError)

Flow = Generator[Any, Any, Any]


class PlanCache:
    """
    Compiled plans keyed by record type name.

    Published plans are read without locking. A type's first compile holds
    only that type's lock, so each type is compiled once and unrelated
    types never wait on each other.
    """

    def __init__(
        self,
        compiler: PlanCompiler | None = None,
        on_compile: Callable[[RecordPlan], None] | None = None,
    ):
        self.compiler = compiler or PlanCompiler()
        self.on_compile = on_compile
        self._plans: dict[str, RecordPlan] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, record_type: type) -> RecordPlan:
        """
        Return the plan for ``record_type``, compiling it on first use.

        Raises:
            InvalidDefinitionError: If the type is inconsistent, or another
                class with the same name is already cached
            InvalidFieldTypeError: If a container field is unrepresentable
        """
        name = record_type.__name__
        plan = self._plans.get(name)

        if plan is None:
            with self._guard:
                lock = self._locks.setdefault(name, threading.Lock())
            with lock:
                plan = self._plans.get(name)
                if plan is None:
                    plan = self.compiler.compile(record_type)
                    self._plans[name] = plan
                    if self.on_compile:
                        self.on_compile(plan)

        if plan.record_type is not record_type:
            raise InvalidDefinitionError(
                f"name already used by {plan.record_type.__module__}.{plan.record_type.__qualname__}",
                type_name=name,
            )
        return plan

    def __contains__(self, record_type: type) -> bool:
        plan = self._plans.get(record_type.__name__)
        return plan is not None and plan.record_type is record_type

    def __len__(self) -> int:
        return len(self._plans)

    def clear(self) -> None:
        with self._guard:
            self._plans.clear()
            self._locks.clear()


class BaseObjectStore:
    """
    State and call flow shared by the sync and async stores.

    Subclasses supply a driver that executes yielded pipelines.
    """

    def __init__(
        self,
        client: Any,
        *,
        root_prefix: str = DEFAULT_ROOT_PREFIX,
        default_options: StoreOptions | None = None,
        query_timeout: float | None = None,
        enable_tracing: bool = False,
        service_name: str = "vertector-redisobj",
        enable_metrics: bool = True,
        metrics_percentiles: list[float] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            client: redis-py client (redis.Redis or redis.asyncio.Redis)
            root_prefix: Prefix of every record key
            default_options: Options for calls that pass none
            query_timeout: Upper bound per round trip in seconds (async store)
            enable_tracing: Emit OpenTelemetry spans (default: False)
            service_name: Service name for spans
            enable_metrics: Record metrics (default: True)
            metrics_percentiles: Latency percentiles to track
        """
        self.client = client
        self.keys = KeyDeriver(root_prefix)
        self.executor = BatchedExecutor(self.keys)
        self.gate = CacheGate(self.keys)
        self.default_options = default_options or StoreOptions()
        self.query_timeout = query_timeout
        self._owns_client = False

        self.enable_metrics = enable_metrics
        self.metrics = EnhancedMetrics(service_name="redisobj", percentiles=metrics_percentiles)
        self.plans = PlanCache(PlanCompiler(), on_compile=self._on_compile)

        if enable_tracing:
            self.tracer = Tracer(service_name=service_name)
            logger.info("OpenTelemetry tracing enabled")
        else:
            self.tracer = None

    @classmethod
    def _config_kwargs(cls, config: RedisObjStoreConfig) -> dict[str, Any]:
        return {
            "root_prefix": config.root_prefix,
            "default_options": config.default_options(),
            "enable_tracing": config.tracing.enabled,
            "service_name": config.tracing.service_name,
            "enable_metrics": config.metrics.enabled,
            "metrics_percentiles": config.metrics.percentiles,
        }

    def _on_compile(self, plan: RecordPlan) -> None:
        if self.enable_metrics:
            self.metrics.record_compilation()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_plan(self, record_type: type) -> RecordPlan:
        """Return the compiled plan for a record type (or instance)."""
        if not isinstance(record_type, type):
            record_type = type(record_type)
        return self.plans.get(record_type)

    def get_metrics(self) -> dict[str, Any]:
        """
        Get current performance metrics.

        Returns:
            Dictionary with operation counts, error counts, latency
            percentiles per operation, freshness hits/misses, pipeline
            sizes and plan compilations
        """
        return self.metrics.get_all_stats()

    def reset_metrics(self) -> None:
        """Reset all performance metrics."""
        self.metrics.reset()
        logger.info("Performance metrics reset")

    def export_prometheus_metrics(self) -> str:
        """Export metrics in Prometheus text exposition format."""
        return self.metrics.export_prometheus()

    def _health_report(self, redis_status: dict[str, Any]) -> dict[str, Any]:
        stats = self.metrics.get_all_stats()
        error_rate = stats["errors"]["rate"]
        checks = {
            "redis": redis_status,
            "metrics": {
                "status": "healthy" if error_rate < 0.05 else "degraded",
                "error_rate": error_rate,
                "operations": stats["operations"]["total"],
            },
        }

        if redis_status["status"] != "healthy":
            overall = "unhealthy"
        elif checks["metrics"]["status"] != "healthy":
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "root_prefix": self.keys.root_prefix,
            "plans_cached": len(self.plans),
        }

    # ------------------------------------------------------------------
    # Call flow
    # ------------------------------------------------------------------

    def _options(self, options: StoreOptions | None) -> StoreOptions:
        return options if options is not None else self.default_options

    def _resolve_target(self, obj: Any) -> RecordPlan:
        if obj is None:
            raise InvalidObjectError("expected a record instance, got None")
        if isinstance(obj, type):
            raise InvalidObjectError(
                f"expected a record instance, got the class {obj.__name__}",
                value=obj,
            )
        if not is_record_instance(obj):
            raise InvalidObjectError(
                f"expected a dataclass or pydantic model instance, got {type(obj).__name__}",
                value=obj,
            )
        return self.plans.get(type(obj))

    def _command_failure(self, error: Exception, command: str) -> RedisCommandError:
        if isinstance(error, (TimeoutError, RedisTimeoutError)):
            return StoreTimeoutError(
                original_error=error,
                timeout_seconds=self.query_timeout,
                operation_type=command,
            )
        return RedisCommandError("failed executing redis pipeline", original_error=error, command=command)

    def _round_trip(self, pipeline: Any, command: str) -> Flow:
        """Hand a pipeline to the driver and return its results."""
        try:
            return (yield pipeline)
        except _DRIVER_ERRORS as e:
            raise self._command_failure(e, command) from e

    def _freshness(
        self,
        boundaries: list[Boundary],
        ttl: Any,
        is_write: bool,
    ) -> Flow:
        pipeline = self.client.pipeline(transaction=False)
        probes = self.gate.stage(pipeline, boundaries, ttl, is_write)
        try:
            results = yield pipeline
        except asyncio.CancelledError:
            # The SETs may have landed without the data that follows them
            if is_write:
                yield from self._invalidate(probes, {})
            raise
        except _DRIVER_ERRORS as e:
            if isinstance(e, (TimeoutError, RedisTimeoutError)):
                raise self._command_failure(e, "content hash exchange") from e
            raise CacheFailureError("failed exchanging content hashes", original_error=e) from e

        freshness = self.gate.resolve(probes, results)
        if self.enable_metrics:
            hits = sum(freshness.values())
            self.metrics.record_freshness(hits, len(freshness) - hits)
        return freshness, probes

    def _invalidate(self, probes: list[FreshnessProbe], freshness: dict[str, bool]) -> Flow:
        stale = [probe.hash_key for probe in probes if not freshness.get(probe.key, False)]
        if not stale:
            return
        pipeline = self.client.pipeline(transaction=False)
        pipeline.delete(*stale)
        try:
            yield pipeline
        except _DRIVER_ERRORS as e:
            logger.warning(f"Could not invalidate {len(stale)} content hashes after a failed write: {e}")

    def _write_flow(self, obj: Any, options: StoreOptions | None, call: dict[str, Any]) -> Flow:
        options = self._options(options)
        plan = self._resolve_target(obj)
        boundaries = self.executor.boundaries(plan, obj)
        root_key = boundaries[0].key

        if options.condition is not WriteCondition.ALWAYS:
            pipeline = self.client.pipeline(transaction=False)
            pipeline.exists(root_key)
            command = f"EXISTS {root_key}"
            (exists,) = yield from self._round_trip(pipeline, command)
            if isinstance(exists, Exception):
                raise RedisCommandError("failed checking write condition", original_error=exists, command=command)
            if bool(exists) != (options.condition is WriteCondition.IF_EXISTS):
                logger.debug(f"Skipped write of {root_key}: condition {options.condition.value} not met")
                return False

        freshness: dict[str, bool] = {}
        probes: list[FreshnessProbe] = []
        if options.enable_caching:
            freshness, probes = yield from self._freshness(boundaries, options.ttl, is_write=True)

        batch = CommandBatch(self.client.pipeline(transaction=False))
        try:
            self.executor.stage_write(
                batch, plan, obj, options.ttl, freshness,
                drop_hashes=not options.enable_caching,
            )
            call["commands"] = len(batch)
            if batch:
                results = yield from self._round_trip(batch.pipeline, f"write {root_key}")
                if self.enable_metrics:
                    self.metrics.record_pipeline("write", len(batch))
                batch.resolve(results)
        except (RedisObjError, asyncio.CancelledError) as err:
            yield from self._invalidate(probes, freshness)
            raise err

        return True

    def _read_flow(self, obj: Any, options: StoreOptions | None, call: dict[str, Any]) -> Flow:
        options = self._options(options)
        plan = self._resolve_target(obj)
        if plan.any_frozen():
            raise InvalidObjectError(
                f"cannot read into immutable record {plan.type_name}",
                value=obj,
            )
        boundaries = self.executor.boundaries(plan, obj)
        root_key = boundaries[0].key

        freshness: dict[str, bool] = {}
        if options.enable_caching:
            freshness, _ = yield from self._freshness(boundaries, None, is_write=False)

        batch = CommandBatch(self.client.pipeline(transaction=False))
        self.executor.stage_read(batch, plan, obj, freshness)
        call["commands"] = len(batch)
        if batch:
            results = yield from self._round_trip(batch.pipeline, f"read {root_key}")
            if self.enable_metrics:
                self.metrics.record_pipeline("read", len(batch))
            batch.resolve(results)

    @contextmanager
    def _observe(self, operation: str, obj: Any) -> Iterator[dict[str, Any]]:
        """Span, performance log and metrics around one store call."""
        type_name = type(obj).__name__
        call: dict[str, Any] = {"commands": 0}
        span_cm = (
            self.tracer.span(f"redisobj.{operation}", {"redisobj.record_type": type_name})
            if self.tracer
            else nullcontext()
        )
        start = time.perf_counter()
        error: Exception | None = None

        try:
            with span_cm as span, PerformanceLogger(
                operation, logger, expected=(ObjectNotFoundError,), record_type=type_name,
            ):
                try:
                    yield call
                finally:
                    if span is not None:
                        span.set_attribute("redisobj.commands", call["commands"])
        except ObjectNotFoundError:
            raise
        except Exception as e:
            error = e
            raise
        finally:
            if self.enable_metrics:
                latency_ms = (time.perf_counter() - start) * 1000
                self.metrics.record_query(
                    operation,
                    latency_ms,
                    success=error is None,
                    error_type=type(error).__name__ if error else None,
                )


class RedisObjectStore(BaseObjectStore):
    """
    Blocking object store over ``redis.Redis``.

    Safe to share between threads; redis-py clients pool connections and
    the plan cache is the only shared mutable state.

    Example:
        with RedisObjectStore.from_config(load_config_from_env()) as store:
            store.write(user, StoreOptions(enable_caching=True, ttl=timedelta(hours=1)))
            store.read(user)
    """

    @classmethod
    def from_config(cls, config: RedisObjStoreConfig) -> "RedisObjectStore":
        """Create a store (and its client) from configuration."""
        store = cls(config.create_client(), **cls._config_kwargs(config))
        store._owns_client = True
        return store

    def write(self, obj: Any, options: StoreOptions | None = None) -> bool:
        """
        Persist a record instance and everything nested in it.

        Args:
            obj: Dataclass or pydantic model instance
            options: Caching, TTL and write condition (default: store defaults)

        Returns:
            False if the write condition skipped the write, True otherwise

        Raises:
            InvalidObjectError: If obj is not a usable record (before any I/O)
            InvalidFieldTypeError: If a value has no string representation
            CacheFailureError: If the content hash exchange fails
            RedisCommandError: If Redis rejects a command or the pipeline
        """
        with self._observe("write", obj) as call:
            return self._run(self._write_flow(obj, options, call))

    def read(self, obj: Any, options: StoreOptions | None = None) -> None:
        """
        Load a record instance in place.

        Identity fields of keyed records must be set, nested ones included:
        a nested keyed record is looked up by the identity it holds in
        memory, so ``Root(Id="u1")`` with a blank child reads the child at
        ``{prefix:Child:none}``. Every other field is overwritten with the
        stored value (zero values for absent ones).

        Raises:
            InvalidObjectError: If obj is not a usable record or is frozen
            ObjectNotFoundError: If a keyed record has never been stored
            InvalidFieldTypeError: If a stored value cannot be decoded
            CacheFailureError: If the content hash lookup fails
            RedisCommandError: If Redis rejects a command or the pipeline
        """
        with self._observe("read", obj) as call:
            self._run(self._read_flow(obj, options, call))

    def _run(self, flow: Flow) -> Any:
        """Execute each yielded pipeline until the flow returns."""
        try:
            pipeline = next(flow)
            while True:
                try:
                    results = pipeline.execute(raise_on_error=False)
                except _DRIVER_ERRORS as e:
                    pipeline = flow.throw(e)
                else:
                    pipeline = flow.send(results)
        except StopIteration as stop:
            return stop.value

    def health_check(self) -> dict[str, Any]:
        """
        Ping Redis and summarise metrics.

        Returns:
            Dictionary with "status" ("healthy" | "degraded" | "unhealthy"),
            per-check details and the number of cached plans
        """
        try:
            start = time.perf_counter()
            self.client.ping()
            redis_status = {
                "status": "healthy",
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        except RedisError as e:
            redis_status = {"status": "unhealthy", "error": str(e)}
        return self._health_report(redis_status)

    def close(self) -> None:
        """Close the client if this store created it."""
        if self._owns_client:
            self.client.close()
        logger.info(f"RedisObjectStore closed for prefix '{self.keys.root_prefix}'")

    def __enter__(self) -> "RedisObjectStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class AsyncRedisObjectStore(BaseObjectStore):
    """
    Asyncio object store over ``redis.asyncio.Redis``.

    Cancelling a call cancels its in-flight round trip; nothing already
    applied in Redis is rolled back.

    Example:
        async with AsyncRedisObjectStore.from_config(config) as store:
            await store.awrite(user)
            await store.aread(user)
    """

    @classmethod
    def from_config(cls, config: RedisObjStoreConfig) -> "AsyncRedisObjectStore":
        """Create a store (and its client) from configuration."""
        store = cls(
            config.create_async_client(),
            query_timeout=config.query_timeout,
            **cls._config_kwargs(config),
        )
        store._owns_client = True
        return store

    async def awrite(self, obj: Any, options: StoreOptions | None = None) -> bool:
        """
        Persist a record instance and everything nested in it.

        Returns:
            False if the write condition skipped the write, True otherwise

        Raises:
            InvalidObjectError: If obj is not a usable record (before any I/O)
            InvalidFieldTypeError: If a value has no string representation
            CacheFailureError: If the content hash exchange fails
            RedisCommandError: If Redis rejects a command or the pipeline
            StoreTimeoutError: If a round trip exceeds query_timeout
            asyncio.CancelledError: If the calling task is cancelled; content
                hashes already exchanged for stale records are deleted first
        """
        with self._observe("write", obj) as call:
            return await self._arun(self._write_flow(obj, options, call))

    async def aread(self, obj: Any, options: StoreOptions | None = None) -> None:
        """
        Load a record instance in place.

        Identities of keyed records, nested ones included, must be set
        beforehand (see RedisObjectStore.read).

        Raises:
            InvalidObjectError: If obj is not a usable record or is frozen
            ObjectNotFoundError: If a keyed record has never been stored
            InvalidFieldTypeError: If a stored value cannot be decoded
            CacheFailureError: If the content hash lookup fails
            RedisCommandError: If Redis rejects a command or the pipeline
            StoreTimeoutError: If a round trip exceeds query_timeout
        """
        with self._observe("read", obj) as call:
            await self._arun(self._read_flow(obj, options, call))

    async def _with_timeout(self, coro):
        if self.query_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.query_timeout)

    async def _arun(self, flow: Flow) -> Any:
        """
        Await each yielded pipeline until the flow returns.

        A cancellation is thrown into the flow once; any cleanup pipeline
        it yields in response runs shielded before the cancellation
        propagates.
        """
        cancelled = False
        try:
            pipeline = next(flow)
            while True:
                execution = self._with_timeout(pipeline.execute(raise_on_error=False))
                try:
                    results = await (asyncio.shield(execution) if cancelled else execution)
                except asyncio.CancelledError as e:
                    if cancelled:
                        raise
                    cancelled = True
                    pipeline = flow.throw(e)
                except _DRIVER_ERRORS as e:
                    pipeline = flow.throw(e)
                else:
                    pipeline = flow.send(results)
        except StopIteration as stop:
            return stop.value

    async def health_check(self) -> dict[str, Any]:
        """
        Ping Redis and summarise metrics.

        Returns:
            Dictionary with "status" ("healthy" | "degraded" | "unhealthy"),
            per-check details and the number of cached plans
        """
        try:
            start = time.perf_counter()
            await self._with_timeout(self.client.ping())
            redis_status = {
                "status": "healthy",
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        except (RedisError, TimeoutError) as e:
            redis_status = {"status": "unhealthy", "error": str(e) or type(e).__name__}
        return self._health_report(redis_status)

    async def aclose(self) -> None:
        """Close the client if this store created it."""
        if self._owns_client:
            await self.client.aclose()
        logger.info(f"AsyncRedisObjectStore closed for prefix '{self.keys.root_prefix}'")

    async def __aenter__(self) -> "AsyncRedisObjectStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
