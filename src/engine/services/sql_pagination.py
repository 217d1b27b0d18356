import re

_ORDER_BY_RE = re.compile(r"\border\s+by\b", re.IGNORECASE)
_PAGING_RE = re.compile(r"\b(limit|offset)\b", re.IGNORECASE)


def apply_limit_offset_keep_order(base_query: str, *, limit: int, offset: int) -> str:
    """
    Постраничное чтение input-запроса.

    - base_query обязан содержать ORDER BY (детерминированные страницы)
    - base_query не должен содержать LIMIT/OFFSET (их добавляет input)
    """
    q = (base_query or "").strip().rstrip(";").rstrip()

    if not _ORDER_BY_RE.search(q):
        raise ValueError("Paged SQL input requires deterministic ORDER BY in query.")

    clause = _PAGING_RE.search(q)
    if clause:
        raise ValueError(
            f"query must not contain {clause.group(1).upper()}; "
            "pagination is handled by the input."
        )

    return f"{q} LIMIT {limit} OFFSET {offset}"
