from __future__ import annotations

from datetime import date, datetime

# "open" effective_to for the current version of a historized record
FAR_FUTURE_TIMESTAMP = datetime(9999, 12, 31)
FAR_FUTURE_DATE = date(9999, 12, 31)
FAR_FUTURE_EPOCH_MS = 253402214400000

CACHE_OPTION = "cache"
SMALL_HINT_OPTION = "hint.small"

DEFAULT_BATCH_SIZE = 1000
