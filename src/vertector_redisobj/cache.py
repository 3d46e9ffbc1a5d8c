"""
Content-hash freshness gate.

Each record boundary keeps a digest of its directly owned fields at
``<key>.__HASH__``. A write exchanges the new digest for the stored one in a
single ``SET ... GET``; when they match the boundary is fresh and its field
writes are skipped. A read compares the caller's instance against the
stored digest; when they match the instance already holds the stored state
and its field reads are skipped.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from vertector_redisobj.errors import CacheFailureError, InvalidFieldTypeError
from vertector_redisobj.executor import Boundary
from vertector_redisobj.keys import KeyDeriver
from vertector_redisobj.plan import FieldKind, RecordPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshnessProbe:
    """One queued hash exchange and the digest it carries."""
    key: str
    hash_key: str
    digest: str


class CacheGate:
    """Computes record digests and queues the hash exchange for them."""

    def __init__(self, keys: KeyDeriver):
        self.keys = keys

    def digest(self, plan: RecordPlan, instance: Any) -> str:
        """
        Digest of a record's directly owned state.

        Embedded nested records are part of the digest; nested records with
        their own identity are not.

        Raises:
            CacheFailureError: If a field value cannot be rendered
        """
        try:
            payload = json.dumps(
                [plan.type_name, self._canonical(plan, instance)],
                separators=(",", ":"),
                ensure_ascii=False,
            )
        except (InvalidFieldTypeError, TypeError, ValueError) as e:
            raise CacheFailureError(f"could not hash {plan.type_name}", original_error=e)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _canonical(self, plan: RecordPlan, instance: Any) -> list:
        rendered = []
        for field in plan.fields:
            value = field.get(instance)
            if field.kind is FieldKind.RECORD:
                if field.child.is_keyed:
                    continue
                nested = None if value is None else self._canonical(field.child, value)
                rendered.append([field.name, nested])
            elif field.kind is FieldKind.SCALAR:
                rendered.append([field.name, field.encode_scalar(value)])
            elif field.kind is FieldKind.LIST:
                rendered.append([field.name, list(field.encode_list(value))])
            elif field.kind is FieldKind.MAP:
                rendered.append([field.name, sorted(field.encode_map(value).items())])
        return rendered

    def stage(
        self,
        pipeline: Any,
        boundaries: list[Boundary],
        ttl: timedelta | None,
        is_write: bool,
    ) -> list[FreshnessProbe]:
        """
        Queue one hash exchange per distinct boundary key.

        Returns:
            The probes, in the order their commands were queued
        """
        probes: list[FreshnessProbe] = []
        seen: set[str] = set()

        for boundary in boundaries:
            if boundary.key in seen:
                continue
            seen.add(boundary.key)

            hash_key = self.keys.hash_key(boundary.key)
            digest = self.digest(boundary.plan, boundary.instance)
            if not is_write:
                pipeline.get(hash_key)
            elif ttl:
                pipeline.set(hash_key, digest, px=ttl, get=True)
            else:
                pipeline.set(hash_key, digest, keepttl=True, get=True)
            probes.append(FreshnessProbe(boundary.key, hash_key, digest))

        return probes

    def resolve(self, probes: list[FreshnessProbe], results: list[Any]) -> dict[str, bool]:
        """
        Turn hash exchange results into per-boundary freshness.

        Raises:
            CacheFailureError: If any exchange failed
        """
        if len(results) != len(probes):
            raise CacheFailureError(f"hash exchange returned {len(results)} results for {len(probes)} keys")

        freshness: dict[str, bool] = {}
        for probe, previous in zip(probes, results):
            if isinstance(previous, Exception):
                raise CacheFailureError(
                    "failed exchanging content hash",
                    original_error=previous,
                    key=probe.hash_key,
                )
            if isinstance(previous, bytes):
                previous = previous.decode("utf-8", errors="replace")
            freshness[probe.key] = previous == probe.digest

        logger.debug(f"Freshness: {sum(freshness.values())}/{len(freshness)} boundaries unchanged")
        return freshness

    def check_and_maybe_update(
        self,
        client: Any,
        key: str,
        plan: RecordPlan,
        instance: Any,
        ttl: timedelta | None = None,
        is_write: bool = False,
    ) -> bool:
        """
        Check a single record against its stored hash in one round trip.

        In write mode the stored hash is replaced with the new digest.

        Returns:
            True if the record is unchanged

        Raises:
            CacheFailureError: If the exchange fails
        """
        pipeline = client.pipeline(transaction=False)
        probes = self.stage(pipeline, [Boundary(plan, instance, key)], ttl, is_write)
        try:
            results = pipeline.execute(raise_on_error=False)
        except RedisError as e:
            raise CacheFailureError("failed exchanging content hash", original_error=e, key=probes[0].hash_key)
        return self.resolve(probes, results)[key]
