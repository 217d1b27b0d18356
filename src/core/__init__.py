from __future__ import annotations

from .enums import FieldType, MutationType
from .exceptions import ConfigurationError, EtlError, PlanningError, SinkError
from .rows import Field, PlannedRow, Row, Schema

__all__ = [
    "ConfigurationError",
    "EtlError",
    "Field",
    "FieldType",
    "MutationType",
    "PlannedRow",
    "PlanningError",
    "Row",
    "Schema",
    "SinkError",
]
