"""modelkit kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .definition_hash import definition_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "definition_hash",
]
