from __future__ import annotations

from typing import Protocol

from src.core.rows import Row
from src.engine.ports.dataset import Dataset


class BatchInput(Protocol):
    """Input читает пришедший батч из источника с объявленной схемой."""

    async def read(self) -> Dataset[Row]:
        """Вернуть батч текущего цикла (может быть пустым)."""
        ...
