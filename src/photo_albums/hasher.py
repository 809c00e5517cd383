"""Stable fingerprints for import jobs."""

from __future__ import annotations

from collections.abc import Iterable

import xxhash


def fingerprint(parts: Iterable[object]) -> str:
    """Return a stable 64-bit fingerprint of an ordered sequence of values.

    Each part is rendered with ``str`` and terminated with a NUL byte so that
    ``["ab", "c"]`` and ``["a", "bc"]`` hash differently. The result is a
    16-character lowercase hexadecimal string.
    """

    hasher = xxhash.xxh64()
    for part in parts:
        hasher.update(str(part).encode("utf-8"))
        hasher.update(b"\0")
    return f"{hasher.intdigest():016x}"


__all__ = ["fingerprint"]
