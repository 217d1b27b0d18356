from __future__ import annotations

from collections.abc import Sequence

from src.core.exceptions import ConfigurationError
from src.core.rows import Row, Schema


class KeyExtractor:
    """Проекция строки на ключевые поля (в порядке key_field_names).

    Схема проекции считается один раз на схему строки и кэшируется в
    экземпляре. Экземпляр принадлежит одной единице обработки: для
    каждой партиции создаётся свой (см. fresh()).
    """

    def __init__(self, key_field_names: Sequence[str]) -> None:
        names = tuple(n.strip() for n in key_field_names if n and n.strip())
        if not names or len(names) != len(key_field_names):
            raise ConfigurationError(
                f"Key field names must be a non-empty list of non-blank names, "
                f"got {list(key_field_names)!r}"
            )
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate key field names: {list(names)!r}")

        self._names = names
        self._projections: dict[Schema, tuple[Schema, tuple[int, ...]]] = {}

    @property
    def key_field_names(self) -> tuple[str, ...]:
        return self._names

    def fresh(self) -> KeyExtractor:
        return KeyExtractor(self._names)

    def key_schema(self, schema: Schema) -> Schema:
        return self._projection(schema)[0]

    def validate(self, schema: Schema) -> None:
        """Проверить, что объявленная схема батча содержит все ключевые поля."""
        missing = [n for n in self._names if n not in schema]
        if missing:
            raise ConfigurationError(
                f"Key fields {missing!r} are absent from schema "
                f"{list(schema.names)!r}"
            )

    def _projection(self, schema: Schema) -> tuple[Schema, tuple[int, ...]]:
        cached = self._projections.get(schema)
        if cached is None:
            self.validate(schema)
            cached = schema.project(self._names)
            self._projections[schema] = cached
        return cached

    def extract(self, row: Row) -> Row:
        key_schema, positions = self._projection(row.schema)
        values = row.values
        return Row(key_schema, tuple(values[i] for i in positions))

    __call__ = extract

    def __repr__(self) -> str:
        return f"KeyExtractor({list(self._names)!r})"
