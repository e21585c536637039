"""Deterministic subject bucketing.

The bucket for a (subject, flag) pair depends only on those strings, so the
same subject lands in the same bucket in every process and in any language
that implements the same recipe:

    md5(utf8(NUL.join([salt,] subject, flag)))[:4] as big-endian uint32 * 10000 >> 32

The salt part is omitted when empty. NUL cannot appear in a header-borne
subject id or a flag key, so ("a:b", "c") and ("a", "b:c") hash differently.
"""

from __future__ import annotations

import hashlib

BUCKET_SPACE = 10000
PERCENT_SCALE = BUCKET_SPACE // 100
HASH_SEPARATOR = "\x00"


def hash_key(subject_id: str, flag_key: str, salt: str = "") -> str:
    """Build the string that is hashed for a (subject, flag) pair."""
    parts = (salt, subject_id, flag_key) if salt else (subject_id, flag_key)
    return HASH_SEPARATOR.join(parts)


def bucket(subject_id: str, flag_key: str, salt: str = "") -> int:
    """Map (subject_id, flag_key) to an integer bucket in [0, 10000)."""
    digest = hashlib.md5(hash_key(subject_id, flag_key, salt).encode("utf-8")).digest()  # nosec B324 - stable rollout hashing
    value = int.from_bytes(digest[:4], "big")
    return (value * BUCKET_SPACE) >> 32


def percentage_threshold(percentage: float) -> int:
    """Scale a 0-100 percentage to the bucket space, clamped."""
    return max(0, min(BUCKET_SPACE, int(round(percentage * PERCENT_SCALE))))


__all__ = ["BUCKET_SPACE", "HASH_SEPARATOR", "PERCENT_SCALE", "bucket", "hash_key", "percentage_threshold"]
