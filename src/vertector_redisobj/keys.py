"""
Key derivation.

Record boundaries (the root record, or any nested record with its own
identity field) live at ``{<prefix>:<TypeName>[:<identity>]}``. The braces
are a Redis Cluster hash tag, so every key of one record instance hashes to
the same slot. Embedded records without an identity extend their parent's
key with ``:<TypeName>``; list and map leaves add ``.<field>``.
"""

from typing import Any

from vertector_redisobj.errors import InvalidFieldTypeError
from vertector_redisobj.plan import FieldPlan, RecordPlan

DEFAULT_ROOT_PREFIX = "redisobj"
MISSING_IDENTITY = "none"
HASH_SUFFIX = ".__HASH__"


class KeyDeriver:
    """Computes Redis keys for record instances."""

    def __init__(self, root_prefix: str = DEFAULT_ROOT_PREFIX):
        self.root_prefix = root_prefix

    def identity_value(self, plan: RecordPlan, instance: Any) -> str | None:
        """Encoded identity of a keyed record; None for singletons."""
        field = plan.identity_field
        if field is None:
            return None
        try:
            value = field.encode_scalar(field.get(instance))
        except InvalidFieldTypeError:
            value = ""
        return value or MISSING_IDENTITY

    def segment(self, plan: RecordPlan, instance: Any) -> str:
        identity = self.identity_value(plan, instance)
        if identity is None:
            return plan.type_name
        return f"{plan.type_name}:{identity}"

    def derive_key(self, plan: RecordPlan, instance: Any, parent_key: str | None = None) -> str:
        """
        Compute the key of a record.

        Args:
            plan: Compiled plan of the record
            instance: The record instance
            parent_key: Key of the enclosing record, None for the root

        Returns:
            The record's hash key
        """
        if parent_key is None or plan.is_keyed:
            return "{" + f"{self.root_prefix}:{self.segment(plan, instance)}" + "}"
        return f"{parent_key}:{self.segment(plan, instance)}"

    @staticmethod
    def leaf_key(record_key: str, field: FieldPlan) -> str:
        return f"{record_key}.{field.name}"

    @staticmethod
    def hash_key(record_key: str) -> str:
        return record_key + HASH_SUFFIX
