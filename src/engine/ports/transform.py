from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from src.core.rows import Row
from src.engine.ports.dataset import Dataset


class Deriver(Protocol):
    """Deriver строит данные шага из данных шагов-зависимостей."""

    async def derive(self, dependencies: Mapping[str, Dataset[Row]]) -> Dataset[Row]:
        ...
