from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    pipeline: str
    run_id: str = field(default_factory=lambda: uuid4().hex[:12])
    attempt: int = 1
