"""Content hash of a stored model definition document."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def definition_hash(doc: Any) -> str:
    """Return ``sha256:<hex>`` over the canonical JSON form of ``doc``."""
    digest = hashlib.sha256(canonical_dumps(doc).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
