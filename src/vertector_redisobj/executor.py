"""
Batched command staging.

The executor walks a RecordPlan against a live instance and queues the
matching Redis commands into one pipeline. Every queued command is paired
with a result consumer at the moment it is queued (see CommandBatch), so
the Nth pipeline result is always handled by the Nth consumer no matter
how deeply records nest or how field kinds mix.

Nothing here performs I/O; the store executes the pipeline and hands the
results back to CommandBatch.resolve().
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, ClassVar

from vertector_redisobj.errors import InvalidObjectError, ObjectNotFoundError, RedisCommandError
from vertector_redisobj.keys import KeyDeriver
from vertector_redisobj.plan import FieldKind, FieldPlan, RecordPlan

logger = logging.getLogger(__name__)


# ============================================================================
# Result consumers
# ============================================================================

@dataclass
class Ack:
    """Consumer for write commands; only failures matter."""
    command: str
    key: str

    def apply(self, result: Any) -> None:
        return None


@dataclass
class ScalarResult:
    """HGET result hydrating one scalar field."""
    command: ClassVar[str] = "hget"
    key: str
    field: FieldPlan
    target: Any

    def apply(self, result: Any) -> None:
        if result is None and self.field.is_identity:
            raise ObjectNotFoundError(key=self.key)
        self.field.set(self.target, self.field.decode_scalar(result))


@dataclass
class ListResult:
    """ZRANGE result rebuilding a list in stored order."""
    command: ClassVar[str] = "zrange"
    key: str
    field: FieldPlan
    target: Any

    def apply(self, result: Any) -> None:
        self.field.set(self.target, self.field.decode_list(result))


@dataclass
class MapResult:
    """HGETALL result rebuilding a mapping."""
    command: ClassVar[str] = "hgetall"
    key: str
    field: FieldPlan
    target: Any

    def apply(self, result: Any) -> None:
        self.field.set(self.target, self.field.decode_map(result))


ResultConsumer = Ack | ScalarResult | ListResult | MapResult


class CommandBatch:
    """
    A pipeline plus the ordered consumers of its results.

    queue() issues the consumer's command on the pipeline and records the
    consumer in the same step, which keeps commands and consumers aligned.
    """

    def __init__(self, pipeline: Any):
        self.pipeline = pipeline
        self.consumers: list[ResultConsumer] = []

    def queue(self, consumer: ResultConsumer, *args: Any, **kwargs: Any) -> None:
        getattr(self.pipeline, consumer.command)(*args, **kwargs)
        self.consumers.append(consumer)

    def __len__(self) -> int:
        return len(self.consumers)

    def __bool__(self) -> bool:
        return bool(self.consumers)

    def resolve(self, results: list[Any]) -> None:
        """
        Apply pipeline results to their consumers, in order.

        Stops at the first failure; consumers already applied keep their
        effect.

        Raises:
            RedisCommandError: If a command failed or the result count is off
            ObjectNotFoundError: If a keyed record has no stored identity
            InvalidFieldTypeError: If a stored value cannot be decoded
        """
        if len(results) != len(self.consumers):
            raise RedisCommandError(
                f"pipeline returned {len(results)} results for {len(self.consumers)} commands"
            )

        for consumer, result in zip(self.consumers, results):
            if isinstance(result, Exception):
                raise RedisCommandError(
                    "failed executing redis command",
                    original_error=result,
                    command=f"{consumer.command.upper()} {consumer.key}",
                )
            consumer.apply(result)


# ============================================================================
# Executor
# ============================================================================

@dataclass
class Boundary:
    """A record with its own key and freshness hash (root or keyed)."""
    plan: RecordPlan
    instance: Any
    key: str


class BatchedExecutor:
    """
    Stages reads and writes of record instances into a CommandBatch.

    ``freshness`` maps boundary keys to the verdict of the cache gate;
    fresh boundaries skip their own field commands but still recurse into
    keyed nested records, which carry their own verdict.
    """

    def __init__(self, keys: KeyDeriver):
        self.keys = keys

    def boundaries(self, plan: RecordPlan, instance: Any) -> list[Boundary]:
        """
        Collect every record boundary reachable from the root.

        Also checks that nested record instances are present, so a
        malformed object is rejected before any I/O.
        """
        found: list[Boundary] = []
        root_key = self.keys.derive_key(plan, instance)
        found.append(Boundary(plan, instance, root_key))
        self._collect(plan, instance, root_key, found)
        return found

    def _collect(self, plan: RecordPlan, instance: Any, key: str, found: list[Boundary]) -> None:
        for field in plan.nested_plans:
            nested = self._nested_instance(plan, field, instance)
            child_key = self._child_key(field, nested, key)
            if field.child.is_keyed:
                found.append(Boundary(field.child, nested, child_key))
            self._collect(field.child, nested, child_key, found)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def stage_write(
        self,
        batch: CommandBatch,
        plan: RecordPlan,
        instance: Any,
        ttl: timedelta | None = None,
        freshness: dict[str, bool] | None = None,
        drop_hashes: bool = False,
    ) -> str:
        """
        Queue the commands that persist ``instance``.

        With ``drop_hashes`` each rewritten boundary also deletes its
        content hash, in the same DEL as its record key. Writes that skip
        the cache gate use this so no hash is left describing older data.

        Returns:
            The root key
        """
        freshness = freshness or {}
        key = self.keys.derive_key(plan, instance)
        self._write_record(
            batch, plan, instance, key, ttl, freshness, freshness.get(key, False),
            drop_hashes, drop_hashes,
        )
        return key

    def _write_record(
        self,
        batch: CommandBatch,
        plan: RecordPlan,
        instance: Any,
        key: str,
        ttl: timedelta | None,
        freshness: dict[str, bool],
        fresh: bool,
        drop_hash: bool = False,
        drop_hashes: bool = False,
    ) -> None:
        expiring: list[str] = []

        if not fresh:
            # Full replace, not merge
            if drop_hash:
                batch.queue(Ack("delete", key), key, self.keys.hash_key(key))
            else:
                batch.queue(Ack("delete", key), key)

        for field in plan.fields:
            if field.kind is FieldKind.RECORD:
                nested = self._nested_instance(plan, field, instance)
                child_key = self._child_key(field, nested, key)
                if field.child.is_keyed:
                    child_fresh = freshness.get(child_key, False)
                    child_drop = drop_hashes
                else:
                    child_fresh, child_drop = fresh, False
                self._write_record(
                    batch, field.child, nested, child_key, ttl, freshness, child_fresh,
                    child_drop, drop_hashes,
                )
                continue

            if fresh:
                if field.kind is not FieldKind.SCALAR:
                    expiring.append(self.keys.leaf_key(key, field))
                continue

            if field.kind is FieldKind.SCALAR:
                batch.queue(Ack("hset", key), key, field.name, field.encode_scalar(field.get(instance)))
                if key not in expiring:
                    expiring.insert(0, key)

            elif field.kind is FieldKind.LIST:
                leaf = self.keys.leaf_key(key, field)
                members = field.encode_list(field.get(instance))
                batch.queue(Ack("delete", leaf), leaf)
                if members:
                    batch.queue(Ack("zadd", leaf), leaf, members)
                    expiring.append(leaf)

            elif field.kind is FieldKind.MAP:
                leaf = self.keys.leaf_key(key, field)
                mapping = field.encode_map(field.get(instance))
                batch.queue(Ack("delete", leaf), leaf)
                if mapping:
                    batch.queue(Ack("hset", leaf), leaf, mapping=mapping)
                    expiring.append(leaf)

        if not ttl:
            return
        if fresh and plan.scalar_fields:
            expiring.insert(0, key)
        for expiring_key in expiring:
            batch.queue(Ack("pexpire", expiring_key), expiring_key, ttl)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def stage_read(
        self,
        batch: CommandBatch,
        plan: RecordPlan,
        instance: Any,
        freshness: dict[str, bool] | None = None,
    ) -> str:
        """
        Queue the commands that hydrate ``instance``.

        Returns:
            The root key
        """
        freshness = freshness or {}
        key = self.keys.derive_key(plan, instance)
        self._read_record(batch, plan, instance, key, freshness, freshness.get(key, False))
        return key

    def _read_record(
        self,
        batch: CommandBatch,
        plan: RecordPlan,
        instance: Any,
        key: str,
        freshness: dict[str, bool],
        fresh: bool,
    ) -> None:
        for field in plan.fields:
            if field.kind is FieldKind.RECORD:
                nested = self._nested_instance(plan, field, instance)
                child_key = self._child_key(field, nested, key)
                child_fresh = freshness.get(child_key, False) if field.child.is_keyed else fresh
                self._read_record(batch, field.child, nested, child_key, freshness, child_fresh)
                continue

            if fresh:
                continue

            if field.kind is FieldKind.SCALAR:
                batch.queue(ScalarResult(key, field, instance), key, field.name)
            elif field.kind is FieldKind.LIST:
                leaf = self.keys.leaf_key(key, field)
                batch.queue(ListResult(leaf, field, instance), leaf, 0, -1)
            elif field.kind is FieldKind.MAP:
                leaf = self.keys.leaf_key(key, field)
                batch.queue(MapResult(leaf, field, instance), leaf)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _child_key(self, field: FieldPlan, nested: Any, parent_key: str) -> str:
        if field.child.is_keyed:
            return self.keys.derive_key(field.child, nested)
        return self.keys.derive_key(field.child, nested, parent_key)

    @staticmethod
    def _nested_instance(plan: RecordPlan, field: FieldPlan, instance: Any) -> Any:
        nested = field.get(instance)
        if not isinstance(nested, field.child.record_type):
            raise InvalidObjectError(
                f"nested record '{plan.type_name}.{field.name}' must be a "
                f"{field.child.type_name} instance, got {type(nested).__name__}",
                value=nested,
            )
        return nested
