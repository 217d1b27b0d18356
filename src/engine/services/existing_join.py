from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from src.core.rows import Row
from src.engine.ports.sink import KeyedSink
from src.engine.services.keys import KeyExtractor

logger = logging.getLogger("etl_runner")


@dataclass(frozen=True, slots=True)
class KeyedRecords:
    key: Row
    arriving: tuple[Row, ...]
    existing: tuple[Row, ...]


class ExistingStateJoiner:
    """Присоединить к пришедшим строкам сохранённые строки тех же ключей.

    На одну партицию: один клиент sink (только если есть группы) и один
    lookup на весь набор различных ключей партиции. Строки, которые sink
    вернул для незапрошенных ключей, отбрасываются с предупреждением.
    """

    def __init__(self, sink: KeyedSink, key_field_names: Sequence[str]) -> None:
        self._sink = sink
        self._extractor = KeyExtractor(key_field_names)

    async def join_partition(
        self,
        groups: Sequence[tuple[Row, Sequence[Row]]],
    ) -> list[KeyedRecords]:
        if not groups:
            return []

        keys = frozenset(key for key, _ in groups)

        async with self._sink.connect() as client:
            existing = list(await client.existing_for_keys(keys))

        existing_by_key = self._map_existing_to_keys(existing, keys)

        return [
            KeyedRecords(
                key=key,
                arriving=tuple(arriving),
                existing=tuple(existing_by_key.get(key, ())),
            )
            for key, arriving in groups
        ]

    def _map_existing_to_keys(
        self,
        existing: Sequence[Row],
        requested: frozenset[Row],
    ) -> dict[Row, list[Row]]:
        extractor = self._extractor.fresh()
        existing_by_key: dict[Row, list[Row]] = {}
        dropped = 0

        for row in existing:
            key = extractor(row)
            if key not in requested:
                dropped += 1
                continue
            existing_by_key.setdefault(key, []).append(row)

        if dropped:
            logger.warning(
                "Sink returned %d existing row(s) for keys that were not requested; "
                "they were ignored (requested_keys=%d)",
                dropped,
                len(requested),
            )

        logger.debug(
            "Existing lookup: keys=%d existing_rows=%d matched_keys=%d",
            len(requested),
            len(existing) - dropped,
            len(existing_by_key),
        )
        return existing_by_key
