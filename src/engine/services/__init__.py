from .compatibility import BulkRoute, KeyedRoute, validate_compatibility
from .existing_join import ExistingStateJoiner, KeyedRecords
from .keys import KeyExtractor
from .merge import plan_mutations_by_key, write_output
from .mutation_apply import apply_bulk, apply_keyed

__all__ = [
    "BulkRoute",
    "ExistingStateJoiner",
    "KeyExtractor",
    "KeyedRecords",
    "KeyedRoute",
    "apply_bulk",
    "apply_keyed",
    "plan_mutations_by_key",
    "validate_compatibility",
    "write_output",
]
