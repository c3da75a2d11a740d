"""Deterministic, injective mapping of topic/group names onto backend names.

Backends restrict resource names differently (RabbitMQ accepts almost
anything, SQS allows ``[A-Za-z0-9_-]`` up to 80 characters, Kafka allows
``[A-Za-z0-9._-]``). Two helpers cover them:

* :func:`dotted_name` escapes the separator, so distinct inputs never alias.
* :func:`restricted_name` keeps clean names readable and appends a digest
  (after a ``--`` marker clean names cannot contain) whenever characters had to
  be replaced or the result had to be truncated.
"""

from __future__ import annotations

import hashlib
import re

DIGEST_MARKER = "--"


def escape_part(part: str, sep: str = ".") -> str:
    """Percent-escape ``%`` and *sep* so that joined parts can be split back."""
    return part.replace("%", "%25").replace(sep, "%" + f"{ord(sep):02X}")


def dotted_name(prefix: str, *parts: str, sep: str = ".") -> str:
    """``prefix.part1.part2`` with each part escaped."""
    _check_parts(parts)
    return sep.join([prefix, *(escape_part(p, sep) for p in parts)])


def digest(*parts: str, length: int = 12) -> str:
    h = hashlib.sha256("\x00".join(parts).encode("utf-8")).hexdigest()
    return h[:length]


def restricted_name(
    prefix: str,
    *parts: str,
    allowed: str = "A-Za-z0-9_-",
    sep: str = "-",
    max_length: int = 80,
) -> str:
    """Join *parts* under *prefix* using only *allowed* characters.

    A name is left as-is when every part is already made of allowed characters,
    contains neither *sep* (for multi-part names) nor the digest marker, and the
    result fits *max_length*. Otherwise invalid characters are replaced by ``_``
    and a digest of the original parts is appended.
    """
    _check_parts(parts)
    invalid = re.compile(f"[^{allowed}]")
    clean = all(
        not invalid.search(p)
        and DIGEST_MARKER not in p
        and (len(parts) == 1 or sep not in p)
        for p in parts
    )
    joined = sep.join([prefix, *parts]) if prefix else sep.join(parts)
    if clean and len(joined) <= max_length:
        return joined
    suffix = DIGEST_MARKER + digest(prefix, *parts)
    readable = invalid.sub("_", joined)
    return readable[: max_length - len(suffix)] + suffix


def _check_parts(parts: tuple[str, ...]) -> None:
    if not parts or any(not p for p in parts):
        raise ValueError("resource name parts must be non-empty strings")
