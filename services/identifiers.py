"""Deterministic mapping from source document keys to UUID-shaped keys.

The target store uses UUID primary keys while the document store hands out
short opaque strings.  :func:`to_canonical_id` bridges the two without a lookup
table: the same key always yields the same identifier, in any process.

The digest is MD5 (128 bits).  It is not used for any security purpose here,
only as a well-distributed, collision-resistant content hash, and it must stay
MD5 so identifiers already written to the target store keep matching.  The
version and variant nibbles are forced to ``4`` and ``a`` so the output looks
like a UUIDv4 to strict column types.
"""
from __future__ import annotations

import hashlib
import re
from typing import Optional

NIL_ID = "00000000-0000-0000-0000-000000000000"

_CANONICAL_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_canonical_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_CANONICAL_PATTERN.match(value))


def to_canonical_id(raw: Optional[str]) -> str:
    """Return the canonical identifier for ``raw``.

    UUID-shaped input is returned unchanged (case preserved); ``None`` and the
    empty string map to :data:`NIL_ID`.
    """

    if raw is None or raw == "":
        return NIL_ID
    raw = str(raw)
    if is_canonical_id(raw):
        return raw

    digest = hashlib.md5(raw.encode("utf-8")).hexdigest()
    return "-".join(
        (
            digest[0:8],
            digest[8:12],
            "4" + digest[13:16],
            "a" + digest[17:20],
            digest[20:32],
        )
    )
