"""
Tests for batched command staging.

Tests:
- Command order for writes and reads
- Result consumers stay aligned with their commands at any nesting depth
- Fresh boundaries and TTL handling
- Result resolution failures
"""

from datetime import timedelta

import pytest
from redis.exceptions import ResponseError

from vertector_redisobj import (
    InvalidFieldTypeError,
    InvalidObjectError,
    KeyDeriver,
    ObjectNotFoundError,
    PlanCompiler,
    RedisCommandError,
)
from vertector_redisobj.executor import BatchedExecutor, CommandBatch
from records import (
    Customer,
    Mixed,
    NestedWithOwnKey,
    RecordingPipeline,
    Root,
    make_mixed,
    make_root,
)

ROOT_KEY = "{redisobj:Root:u1}"
CHILD_KEY = "{redisobj:NestedWithOwnKey:c1}"


@pytest.fixture
def executor():
    return BatchedExecutor(KeyDeriver())


@pytest.fixture
def compiler():
    return PlanCompiler()


def apply_writes(commands, db):
    """Replay recorded write commands against a dict-of-dicts."""
    for name, args, kwargs in commands:
        if name == "delete":
            for key in args:
                db.pop(key, None)
        elif name == "hset":
            target = db.setdefault(args[0], {})
            if "mapping" in kwargs:
                target.update(kwargs["mapping"])
            else:
                target[args[1]] = args[2]
        elif name == "zadd":
            db[args[0]] = dict(args[1])
        elif name == "pexpire":
            pass
        else:
            raise AssertionError(f"unexpected write command {name}")


def read_results(commands, db):
    """Answer recorded read commands from a dict-of-dicts."""
    results = []
    for name, args, _ in commands:
        if name == "hget":
            results.append(db.get(args[0], {}).get(args[1]))
        elif name == "zrange":
            members = db.get(args[0], {})
            results.append(sorted(members, key=members.get))
        elif name == "hgetall":
            results.append(dict(db.get(args[0], {})))
        else:
            raise AssertionError(f"unexpected read command {name}")
    return results


@pytest.mark.unit
class TestStageWrite:
    """Test queued write commands."""

    def test_root_commands(self, executor, compiler):
        """Test the full replace of a root and its keyed child."""
        batch = CommandBatch(RecordingPipeline())
        key = executor.stage_write(batch, compiler.compile(Root), make_root())

        assert key == ROOT_KEY
        assert batch.pipeline.commands == [
            ("delete", (ROOT_KEY,), {}),
            ("hset", (ROOT_KEY, "Id", "u1"), {}),
            ("hset", (ROOT_KEY, "Name", "alice"), {}),
            ("delete", (ROOT_KEY + ".Tags",), {}),
            ("zadd", (ROOT_KEY + ".Tags", {"a": 0, "b": 1}), {}),
            ("delete", (ROOT_KEY + ".Scores",), {}),
            ("hset", (ROOT_KEY + ".Scores",), {"mapping": {"x": "1"}}),
            ("delete", (CHILD_KEY,), {}),
            ("hset", (CHILD_KEY, "Id", "c1"), {}),
            ("hset", (CHILD_KEY, "Label", "first child"), {}),
        ]
        assert len(batch) == 10

    def test_drop_hashes(self, executor, compiler):
        """Test each boundary's hash is deleted along with its record key."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(batch, compiler.compile(Root), make_root(), drop_hashes=True)

        deletes = [args for name, args, _ in batch.pipeline.commands if name == "delete"]
        assert (ROOT_KEY, ROOT_KEY + ".__HASH__") in deletes
        assert (CHILD_KEY, CHILD_KEY + ".__HASH__") in deletes
        assert len(batch) == 10

    def test_drop_hashes_skips_embedded(self, executor, compiler):
        """Test embedded records have no hash of their own to delete."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(batch, compiler.compile(Customer), Customer(customer_id=9), drop_hashes=True)

        deletes = [args for name, args, _ in batch.pipeline.commands if name == "delete"]
        assert deletes == [
            ("{redisobj:Customer:9}", "{redisobj:Customer:9}.__HASH__"),
            ("{redisobj:Customer:9}:Address",),
        ]

    def test_empty_containers_only_cleared(self, executor, compiler):
        """Test empty lists and maps are deleted but not written."""
        root = make_root()
        root.Tags = []
        root.Scores = {}

        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(batch, compiler.compile(Root), root)

        assert "zadd" not in batch.pipeline.names
        assert ("delete", (ROOT_KEY + ".Tags",), {}) in batch.pipeline.commands

    def test_ttl_expires_every_written_key(self, executor, compiler):
        """Test each written key gets the TTL."""
        ttl = timedelta(seconds=60)
        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(batch, compiler.compile(Root), make_root(), ttl=ttl)

        expired = [args[0] for name, args, _ in batch.pipeline.commands if name == "pexpire"]
        assert sorted(expired) == sorted([ROOT_KEY, ROOT_KEY + ".Tags", ROOT_KEY + ".Scores", CHILD_KEY])
        assert all(args[1] == ttl for name, args, _ in batch.pipeline.commands if name == "pexpire")

    def test_fresh_boundary_skips_fields(self, executor, compiler):
        """Test a fresh root is untouched while a stale keyed child is rewritten."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(
            batch,
            compiler.compile(Root),
            make_root(),
            freshness={ROOT_KEY: True, CHILD_KEY: False},
        )

        touched = {args[0] for _, args, _ in batch.pipeline.commands}
        assert touched == {CHILD_KEY}

    def test_fresh_boundary_with_ttl_refreshes_expiry(self, executor, compiler):
        """Test fresh boundaries still have their expiry renewed."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_write(
            batch,
            compiler.compile(Root),
            make_root(),
            ttl=timedelta(seconds=5),
            freshness={ROOT_KEY: True, CHILD_KEY: True},
        )

        assert batch.pipeline.names == ["pexpire"] * 4

    def test_embedded_inherits_freshness(self, executor, compiler):
        """Test embedded records follow their parent's freshness."""
        plan = compiler.compile(Customer)
        customer = Customer(customer_id=9, name="ada")
        key = "{redisobj:Customer:9}"

        fresh = CommandBatch(RecordingPipeline())
        executor.stage_write(fresh, plan, customer, freshness={key: True})
        assert len(fresh) == 0

        stale = CommandBatch(RecordingPipeline())
        executor.stage_write(stale, plan, customer)
        assert ("delete", (key + ":Address",), {}) in stale.pipeline.commands

    def test_duplicate_list_elements(self, executor, compiler):
        """Test lists with repeated elements cannot be stored."""
        root = make_root()
        root.Tags = ["a", "b", "a"]

        with pytest.raises(InvalidFieldTypeError) as exc_info:
            executor.stage_write(CommandBatch(RecordingPipeline()), compiler.compile(Root), root)
        assert "Tags" in str(exc_info.value)

    def test_wrong_scalar_type(self, executor, compiler):
        """Test scalar values must match their declared type."""
        root = make_root()
        root.Name = 5

        with pytest.raises(InvalidFieldTypeError):
            executor.stage_write(CommandBatch(RecordingPipeline()), compiler.compile(Root), root)


@pytest.mark.unit
class TestStageRead:
    """Test queued read commands and their consumers."""

    def test_root_commands(self, executor, compiler):
        """Test one command per field in declaration order."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), Root(Id="u1", Child=NestedWithOwnKey(Id="c1")))

        assert batch.pipeline.commands == [
            ("hget", (ROOT_KEY, "Id"), {}),
            ("hget", (ROOT_KEY, "Name"), {}),
            ("zrange", (ROOT_KEY + ".Tags", 0, -1), {}),
            ("hgetall", (ROOT_KEY + ".Scores",), {}),
            ("hget", (CHILD_KEY, "Id"), {}),
            ("hget", (CHILD_KEY, "Label"), {}),
        ]

    def test_fresh_boundary_skipped(self, executor, compiler):
        """Test fresh boundaries issue no reads."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(
            batch,
            compiler.compile(Root),
            make_root(),
            freshness={ROOT_KEY: True},
        )
        assert {args[0] for _, args, _ in batch.pipeline.commands} == {CHILD_KEY}

    def test_consumers_stay_aligned(self, executor, compiler):
        """Test interleaved field kinds and nesting read back exactly."""
        plan = compiler.compile(Mixed)
        db: dict = {}

        write = CommandBatch(RecordingPipeline())
        executor.stage_write(write, plan, make_mixed())
        apply_writes(write.pipeline.commands, db)

        target = Mixed(id="m1", other=NestedWithOwnKey(Id="o1"))
        read = CommandBatch(RecordingPipeline())
        executor.stage_read(read, plan, target)
        read.resolve(read_results(read.pipeline.commands, db))

        assert target == make_mixed()

    def test_missing_identity(self, executor, compiler):
        """Test an absent identity field means the record was never stored."""
        target = make_root()
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), target)

        with pytest.raises(ObjectNotFoundError) as exc_info:
            batch.resolve([None] * len(batch))
        assert exc_info.value.key == ROOT_KEY
        assert target.Name == "alice"

    def test_absent_fields_are_zero(self, executor, compiler):
        """Test fields missing from storage read as zero values."""
        target = make_root()
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), target)

        batch.resolve([b"u1", None, [], {}, b"c1", None])

        assert target.Name == ""
        assert target.Tags == []
        assert target.Scores == {}
        assert target.Child.Label == ""


@pytest.mark.unit
class TestBoundaries:
    """Test boundary collection and nested instance checks."""

    def test_root_and_keyed_children(self, executor, compiler):
        """Test the root and keyed nested records are boundaries."""
        boundaries = executor.boundaries(compiler.compile(Mixed), make_mixed())
        assert [b.key for b in boundaries] == ["{redisobj:Mixed:m1}", "{redisobj:NestedWithOwnKey:o1}"]

    def test_embedded_not_a_boundary(self, executor, compiler):
        """Test embedded records share their parent's boundary."""
        boundaries = executor.boundaries(compiler.compile(Customer), Customer(customer_id=1))
        assert len(boundaries) == 1

    def test_missing_nested_instance(self, executor, compiler):
        """Test a None nested record is rejected."""
        root = make_root()
        root.Child = None

        with pytest.raises(InvalidObjectError) as exc_info:
            executor.boundaries(compiler.compile(Root), root)
        assert "Root.Child" in str(exc_info.value)

    def test_wrong_nested_type(self, executor, compiler):
        """Test a nested record of the wrong class is rejected."""
        root = make_root()
        root.Child = "c1"

        with pytest.raises(InvalidObjectError):
            executor.boundaries(compiler.compile(Root), root)


@pytest.mark.unit
class TestResolve:
    """Test result resolution failures."""

    def test_count_mismatch(self, executor, compiler):
        """Test a short result list is a command error."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), make_root())

        with pytest.raises(RedisCommandError):
            batch.resolve([])

    def test_failed_command_named(self, executor, compiler):
        """Test a failed command is reported with its key."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), make_root())
        results = [b"u1", b"alice", ResponseError("WRONGTYPE"), {}, b"c1", b""]

        with pytest.raises(RedisCommandError) as exc_info:
            batch.resolve(results)
        assert exc_info.value.command == f"ZRANGE {ROOT_KEY}.Tags"
        assert isinstance(exc_info.value.original_error, ResponseError)

    def test_undecodable_value(self, executor, compiler):
        """Test stored values that do not parse are field type errors."""
        batch = CommandBatch(RecordingPipeline())
        executor.stage_read(batch, compiler.compile(Root), make_root())

        with pytest.raises(InvalidFieldTypeError):
            batch.resolve([b"u1", b"alice", [], {b"x": b"not-a-number"}, b"c1", b""])
