"""
Record type plans.

A RecordPlan describes the shape of one record type: which fields are
scalars, lists, maps or nested records, which field (if any) is the
identity, and how to read and write each one. Plans hold no instance
data and are immutable once compiled, so a single plan is shared by every
call for its type.

Records are dataclasses or pydantic models. The identity field is marked
with ``Annotated[T, Key]`` or, on dataclasses, ``key_field()``:

    @dataclass
    class User:
        id: Annotated[str, Key] = ""
        name: str = ""
        tags: list[str] = field(default_factory=list)
"""

import dataclasses
import logging
import typing
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, get_args, get_origin

from pydantic import BaseModel

from vertector_redisobj import codec
from vertector_redisobj.codec import ScalarKind
from vertector_redisobj.errors import InvalidDefinitionError, InvalidFieldTypeError

logger = logging.getLogger(__name__)

KEY_METADATA = "redisobj"
KEY_METADATA_VALUE = "key"


class _KeyMarker:
    """Annotated metadata marking a record's identity field."""

    def __repr__(self) -> str:
        return "Key"


Key = _KeyMarker()


def key_field(**kwargs: Any) -> Any:
    """dataclasses.field() that marks the identity field."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[KEY_METADATA] = KEY_METADATA_VALUE
    return dataclasses.field(metadata=metadata, **kwargs)


class FieldKind(str, Enum):
    """How a field is laid out in Redis."""
    SCALAR = "scalar"
    LIST = "list"
    MAP = "map"
    RECORD = "record"


@dataclass(frozen=True)
class FieldPlan:
    """
    Shape of a single record field.

    Attributes:
        name: Attribute name, also the hash field / leaf key suffix
        position: Index of the field in declaration order
        kind: Scalar, list, map or nested record
        scalar_kind: Kind of a scalar value or list element (None if the
            scalar annotation is not representable; the codec rejects it)
        key_kind: Kind of map keys
        value_kind: Kind of map values
        is_identity: True for the record's identity field
        child: Compiled plan of a nested record
    """
    name: str
    position: int
    kind: FieldKind
    scalar_kind: ScalarKind | None = None
    key_kind: ScalarKind | None = None
    value_kind: ScalarKind | None = None
    is_identity: bool = False
    child: "RecordPlan | None" = None

    def get(self, instance: Any) -> Any:
        return getattr(instance, self.name)

    def set(self, instance: Any, value: Any) -> None:
        setattr(instance, self.name, value)

    def encode_scalar(self, value: Any) -> str:
        """Encode a scalar field value."""
        if self.scalar_kind is None:
            raise InvalidFieldTypeError(f"no string representation for {value!r}", field=self.name)
        try:
            return codec.encode(value, self.scalar_kind)
        except InvalidFieldTypeError as e:
            raise InvalidFieldTypeError(e.message, field=self.name) from e

    def decode_scalar(self, raw: str | bytes | None) -> Any:
        """Decode a scalar field value."""
        if self.scalar_kind is None:
            raise InvalidFieldTypeError(f"no string representation for {raw!r}", field=self.name)
        try:
            return codec.decode(raw, self.scalar_kind)
        except InvalidFieldTypeError as e:
            raise InvalidFieldTypeError(e.message, field=self.name) from e

    def encode_list(self, values: Any) -> dict[str, int]:
        """Encode a list as sorted-set members scored by their index."""
        members: dict[str, int] = {}
        for index, value in enumerate(values or ()):
            member = codec.encode(value, self.scalar_kind)
            if member in members:
                raise InvalidFieldTypeError(
                    f"duplicate element {value!r} cannot be stored in an ordered set",
                    field=self.name,
                )
            members[member] = index
        return members

    def decode_list(self, raw: list | None) -> list:
        return [codec.decode(member, self.scalar_kind) for member in raw or ()]

    def encode_map(self, mapping: Any) -> dict[str, str]:
        return {
            codec.encode(k, self.key_kind): codec.encode(v, self.value_kind)
            for k, v in (mapping or {}).items()
        }

    def decode_map(self, raw: dict | None) -> dict:
        return {
            codec.decode(k, self.key_kind): codec.decode(v, self.value_kind)
            for k, v in (raw or {}).items()
        }


@dataclass(frozen=True)
class RecordPlan:
    """
    Compiled shape of a record type.

    ``fields`` holds every field in declaration order; the ``*_fields``
    properties are ordered views of it.
    """
    type_name: str
    record_type: type
    key_field_index: int
    fields: tuple[FieldPlan, ...]
    frozen: bool = False

    @property
    def is_keyed(self) -> bool:
        return self.key_field_index != -1

    @property
    def identity_field(self) -> FieldPlan | None:
        for field in self.fields:
            if field.is_identity:
                return field
        return None

    @property
    def scalar_fields(self) -> tuple[FieldPlan, ...]:
        return tuple(f for f in self.fields if f.kind is FieldKind.SCALAR)

    @property
    def list_fields(self) -> tuple[FieldPlan, ...]:
        return tuple(f for f in self.fields if f.kind is FieldKind.LIST)

    @property
    def map_fields(self) -> tuple[FieldPlan, ...]:
        return tuple(f for f in self.fields if f.kind is FieldKind.MAP)

    @property
    def nested_plans(self) -> tuple[FieldPlan, ...]:
        return tuple(f for f in self.fields if f.kind is FieldKind.RECORD)

    def any_frozen(self) -> bool:
        """True if this record or any nested record is immutable."""
        return self.frozen or any(f.child.any_frozen() for f in self.nested_plans)


def is_record_type(tp: Any) -> bool:
    """True for dataclass types and pydantic model classes."""
    if not isinstance(tp, type):
        return False
    return dataclasses.is_dataclass(tp) or issubclass(tp, BaseModel)


def is_record_instance(obj: Any) -> bool:
    return not isinstance(obj, type) and is_record_type(type(obj))


def _strip_annotated(annotation: Any) -> tuple[Any, tuple]:
    if get_origin(annotation) is Annotated:
        base, *extras = get_args(annotation)
        return base, tuple(extras)
    return annotation, ()


class PlanCompiler:
    """
    Derives RecordPlans from record types.

    The compiler is stateless; caching compiled plans is the store's job.
    """

    def compile(self, record: Any) -> RecordPlan:
        """
        Compile the plan for a record type or instance.

        Raises:
            InvalidFieldTypeError: If a list or map holds unrepresentable types
            InvalidDefinitionError: If the record type is inconsistent
        """
        record_type = record if isinstance(record, type) else type(record)
        if not is_record_type(record_type):
            raise InvalidDefinitionError(
                "records must be dataclasses or pydantic models",
                type_name=getattr(record_type, "__name__", repr(record_type)),
            )
        plan = self._compile(record_type, ())
        logger.debug(f"Compiled plan for {plan.type_name} ({len(plan.fields)} fields)")
        return plan

    def _compile(self, record_type: type, stack: tuple[type, ...]) -> RecordPlan:
        type_name = record_type.__name__
        if record_type in stack:
            raise InvalidDefinitionError("record type contains itself", type_name=type_name)
        stack = stack + (record_type,)

        key_field_index = -1
        embedded_types: set[type] = set()
        fields = []

        for position, (name, annotation, field_metadata) in enumerate(self._declared_fields(record_type)):
            base, extras = _strip_annotated(annotation)
            is_identity = any(extra is Key for extra in extras) or (
                field_metadata.get(KEY_METADATA) == KEY_METADATA_VALUE
            )
            origin = get_origin(base)

            if is_record_type(base):
                if is_identity:
                    raise InvalidDefinitionError(f"identity field '{name}' must be a scalar", type_name=type_name)
                child = self._compile(base, stack)
                if not child.is_keyed:
                    if base in embedded_types:
                        raise InvalidDefinitionError(
                            f"more than one embedded '{child.type_name}' field; their keys would collide",
                            type_name=type_name,
                        )
                    embedded_types.add(base)
                fields.append(FieldPlan(name=name, position=position, kind=FieldKind.RECORD, child=child))
                continue

            if origin is list or base is list:
                if is_identity:
                    raise InvalidDefinitionError(f"identity field '{name}' must be a scalar", type_name=type_name)
                args = get_args(base)
                element_kind = codec.kind_of(args[0]) if args else None
                if element_kind is None:
                    raise InvalidFieldTypeError(
                        "list values must be a primitive type that is string parsable",
                        field=f"{type_name}.{name}",
                    )
                fields.append(FieldPlan(name=name, position=position, kind=FieldKind.LIST, scalar_kind=element_kind))
                continue

            if origin is dict or base is dict:
                if is_identity:
                    raise InvalidDefinitionError(f"identity field '{name}' must be a scalar", type_name=type_name)
                args = get_args(base)
                key_kind = codec.kind_of(args[0]) if args else None
                if key_kind is None:
                    raise InvalidFieldTypeError(
                        "map keys must be a primitive type that is string parsable",
                        field=f"{type_name}.{name}",
                    )
                value_kind = codec.kind_of(args[1]) if len(args) > 1 else None
                if value_kind is None:
                    raise InvalidFieldTypeError(
                        "map values must be a primitive type that is string parsable",
                        field=f"{type_name}.{name}",
                    )
                fields.append(FieldPlan(
                    name=name,
                    position=position,
                    kind=FieldKind.MAP,
                    key_kind=key_kind,
                    value_kind=value_kind,
                ))
                continue

            if is_identity:
                if key_field_index != -1:
                    raise InvalidDefinitionError(
                        f"both '{fields[key_field_index].name}' and '{name}' are marked as the key",
                        type_name=type_name,
                    )
                key_field_index = position
            fields.append(FieldPlan(
                name=name,
                position=position,
                kind=FieldKind.SCALAR,
                scalar_kind=codec.kind_of(annotation),
                is_identity=is_identity,
            ))

        return RecordPlan(
            type_name=type_name,
            record_type=record_type,
            key_field_index=key_field_index,
            fields=tuple(fields),
            frozen=self._is_frozen(record_type),
        )

    @staticmethod
    def _declared_fields(record_type: type) -> list[tuple[str, Any, dict]]:
        """(name, annotation, metadata) per field, in declaration order."""
        if dataclasses.is_dataclass(record_type):
            hints = typing.get_type_hints(record_type, include_extras=True)
            return [
                (f.name, hints.get(f.name, Any), dict(f.metadata))
                for f in dataclasses.fields(record_type)
            ]

        # pydantic strips Annotated into FieldInfo.metadata; put it back
        declared = []
        for name, info in record_type.model_fields.items():
            annotation = info.annotation
            if info.metadata:
                annotation = Annotated[(annotation, *info.metadata)]
            declared.append((name, annotation, {}))
        return declared

    @staticmethod
    def _is_frozen(record_type: type) -> bool:
        if dataclasses.is_dataclass(record_type):
            return record_type.__dataclass_params__.frozen
        return bool(record_type.model_config.get("frozen", False))
