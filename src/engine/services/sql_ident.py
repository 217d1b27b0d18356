import re

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_sql_ident(name: str, *, what: str) -> str:
    n = (name or "").strip()
    if not _IDENT_RE.fullmatch(n):
        raise ValueError(
            f"Invalid {what}: {n!r}. " "Expected SQL identifier, e.g. 'film_id'"
        )
    return n


def validate_table_name(name: str) -> str:
    """'schema.table' или 'table'; каждая часть: SQL identifier."""
    parts = (name or "").strip().split(".")
    if len(parts) > 2:
        raise ValueError(f"Invalid table name: {name!r}. Expected 'schema.table' or 'table'")
    return ".".join(validate_sql_ident(p, what="table name part") for p in parts)
