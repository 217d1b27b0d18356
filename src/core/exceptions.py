from __future__ import annotations


class EtlError(Exception):
    """Базовая ошибка движка merge-пайплайнов."""


class ConfigurationError(EtlError):
    """Невалидная конфигурация шага: обнаруживается до чтения первой строки."""


class PlanningError(EtlError):
    """Планировщик отверг входные данные ключа (например, null в ключе)."""


class SinkError(EtlError):
    """Sink сообщил об ошибке lookup/apply."""
