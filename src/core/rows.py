from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from src.core.enums import FieldType, MutationType
from src.core.exceptions import ConfigurationError


def infer_field_type(value: Any) -> FieldType:
    if value is None:
        return FieldType.NULL
    # bool до int: bool является подклассом int
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        return FieldType.INTEGER
    if isinstance(value, float):
        return FieldType.FLOAT
    if isinstance(value, Decimal):
        return FieldType.DECIMAL
    if isinstance(value, datetime):
        return FieldType.TIMESTAMP
    if isinstance(value, date):
        return FieldType.DATE
    if isinstance(value, UUID):
        return FieldType.UUID
    if isinstance(value, (bytes, bytearray, memoryview)):
        return FieldType.BINARY
    if isinstance(value, (dict, list)):
        return FieldType.JSON
    return FieldType.STRING


@dataclass(frozen=True, slots=True)
class Field:
    name: str
    type: FieldType


@dataclass(frozen=True, slots=True)
class Schema:
    """Упорядоченный набор полей. Неизменяемый и хешируемый."""

    fields: tuple[Field, ...] = ()

    @classmethod
    def of(cls, *pairs: tuple[str, FieldType]) -> Schema:
        return cls(tuple(Field(name, ftype) for name, ftype in pairs))

    @classmethod
    def infer(cls, mapping: Mapping[str, Any]) -> Schema:
        return cls(tuple(Field(str(k), infer_field_type(v)) for k, v in mapping.items()))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: object) -> bool:
        return any(f.name == name for f in self.fields)

    def index_of(self, name: str) -> int:
        for i, f in enumerate(self.fields):
            if f.name == name:
                return i
        raise ConfigurationError(
            f"Field {name!r} is not in schema. Fields={list(self.names)}"
        )

    def project(self, names: Sequence[str]) -> tuple[Schema, tuple[int, ...]]:
        """Схема-подмножество в порядке names и позиции полей в исходной схеме."""
        positions = tuple(self.index_of(n) for n in names)
        return Schema(tuple(self.fields[i] for i in positions)), positions


class Row:
    """Неизменяемая строка: значения + ссылка на схему.

    Равенство и хеш структурные: по именам полей и значениям. Типы
    выводятся из значений, поэтому строка из sink и пришедшая строка
    с одинаковыми значениями ключа дают равные ключи.
    """

    __slots__ = ("_schema", "_values", "_hash")

    def __init__(self, schema: Schema, values: Sequence[Any]) -> None:
        values = tuple(values)
        if len(values) != len(schema):
            raise ValueError(
                f"Row has {len(values)} values for schema of {len(schema)} fields"
            )
        object.__setattr__(self, "_schema", schema)
        object.__setattr__(self, "_values", values)
        object.__setattr__(self, "_hash", None)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Row is immutable")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], schema: Schema | None = None) -> Row:
        if schema is None:
            schema = Schema.infer(mapping)
            return cls(schema, tuple(mapping.values()))
        return cls(schema, tuple(mapping.get(n) for n in schema.names))

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def values(self) -> tuple[Any, ...]:
        return self._values

    def __getitem__(self, name: str) -> Any:
        return self._values[self._schema.index_of(name)]

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self._schema:
            return default
        return self[name]

    def __contains__(self, name: object) -> bool:
        return name in self._schema

    def __iter__(self) -> Iterator[str]:
        return iter(self._schema.names)

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> Iterator[tuple[str, Any]]:
        return zip(self._schema.names, self._values)

    def as_dict(self) -> dict[str, Any]:
        return dict(self.items())

    def replace(self, **changes: Any) -> Row:
        """Новая строка с изменёнными (или добавленными в конец) полями."""
        d = self.as_dict()
        d.update(changes)
        fields = list(self._schema.fields)
        for name, value in changes.items():
            if name not in self._schema:
                fields.append(Field(name, infer_field_type(value)))
        return Row(Schema(tuple(fields)), tuple(d[f.name] for f in fields))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self._schema.names == other._schema.names and self._values == other._values

    def __hash__(self) -> int:
        if self._hash is None:
            object.__setattr__(self, "_hash", hash((self._schema.names, self._values)))
        return self._hash

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v!r}" for k, v in self.items())
        return f"Row({inner})"


@dataclass(frozen=True, slots=True)
class PlannedRow:
    mutation_type: MutationType
    row: Row
