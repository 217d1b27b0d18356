from __future__ import annotations

import re

_SPACES_RE = re.compile(r"\s+")


def _title(value) -> str:
    return _SPACES_RE.sub(" ", str(value or "")).strip()


def _rating(value) -> float | None:
    if value is None or value == "":
        return None
    return round(float(value), 1)


def transform(rows: list[dict]) -> list[dict]:
    """Строки film_dim для merge по film_id; строки без ключа отбрасываются."""
    return [
        {
            "film_id": r["film_id"],
            "title": _title(r.get("title")),
            "rating": _rating(r.get("rating")),
        }
        for r in rows
        if r.get("film_id") is not None
    ]
