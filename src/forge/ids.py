"""Collision-resistant task identifiers.

IDs look like ``fg-3k9z``: a namespace prefix, a dash, and a fixed-width
base36 suffix drawn from fresh random entropy. Nothing here consults a
shared counter, so independent processes can mint concurrently; the rare
collision against an existing ID is handled by retrying.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from collections.abc import Callable

log = logging.getLogger(__name__)

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
DEFAULT_ID_LENGTH = 4
MIN_ENTROPY_BITS = 32
CROWDED_WARNING_EVERY = 64
MAX_PREFIX_LENGTH = 16

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def validate_prefix(prefix: str) -> str:
    """Normalize and validate a namespace prefix. Raises ValueError."""
    normalized = prefix.strip().lower()
    if not normalized or len(normalized) > MAX_PREFIX_LENGTH:
        raise ValueError(
            f"Invalid prefix '{prefix}'. Must be 1-{MAX_PREFIX_LENGTH} characters."
        )
    if not _PREFIX_RE.match(normalized) or normalized.endswith("_"):
        raise ValueError(
            f"Invalid prefix '{prefix}'. Use lowercase letters, digits and '_', "
            "starting with a letter."
        )
    return normalized


def encode_base36(value: int, width: int) -> str:
    """Encode a non-negative integer, left-padded with '0' to *width*."""
    if value < 0:
        raise ValueError("value must be non-negative")
    chars: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        chars.append(ALPHABET[rem])
    return "".join(reversed(chars)).rjust(width, "0")


def random_suffix(length: int = DEFAULT_ID_LENGTH) -> str:
    space = 36**length
    bits = max(MIN_ENTROPY_BITS, math.ceil(math.log2(space)) + 8)
    return encode_base36(secrets.randbits(bits) % space, length)


def mint(
    prefix: str,
    *,
    exists: Callable[[str], bool] | None = None,
    length: int = DEFAULT_ID_LENGTH,
) -> str:
    """Mint a new ID under *prefix*.

    *exists* reports whether a candidate is already taken; taken candidates
    are discarded and a new one is drawn at the same width, so every ID
    under one configured length has the same shape.
    """
    prefix = validate_prefix(prefix)
    collisions = 0
    while True:
        candidate = f"{prefix}-{random_suffix(length)}"
        if exists is None or not exists(candidate):
            return candidate
        collisions += 1
        if collisions % CROWDED_WARNING_EVERY == 0:
            log.warning(
                "ID space %s-<%d chars> is crowded: %d collisions so far; "
                "consider a larger id_length",
                prefix,
                length,
                collisions,
            )
