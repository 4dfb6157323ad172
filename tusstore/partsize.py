"""Part sizing, id splitting and key helpers for the S3 store."""

from __future__ import annotations

import re

# Anything that may not appear in an HTTP header value.
_NON_PRINTABLE = re.compile(r"[^\x09\x20-\x7E]")


def calc_optimal_part_size(
    size: int, preferred_part_size: int, max_multipart_parts: int, max_part_size: int
) -> int:
    """Choose the part size for an upload of ``size`` bytes.

    The preferred size is used whenever the upload fits into the allowed number
    of parts with it; otherwise the parts grow just enough to fit. Raises
    ``ValueError`` if that would exceed ``max_part_size``.
    """
    if size <= preferred_part_size * max_multipart_parts:
        optimal = preferred_part_size
    else:
        quotient, remainder = divmod(size, max_multipart_parts)
        # Round up so the upload fits; an exact division must stay as is or
        # it could be pushed past max_part_size.
        optimal = quotient if remainder == 0 else quotient + 1

    if optimal > max_part_size:
        raise ValueError(
            f"calcOptimalPartSize: to upload {size} bytes optimalPartSize {optimal} "
            f"must exceed MaxPartSize {max_part_size}"
        )
    return optimal


def split_ids(upload_id: str) -> tuple[str, str]:
    """Split ``"<object id>+<multipart id>"``; both are empty if there is no ``+``."""
    object_id, sep, multipart_id = upload_id.partition("+")
    if not sep:
        return "", ""
    return object_id, multipart_id


def key_with_prefix(prefix: str, key: str) -> str:
    """Join ``prefix`` and ``key`` with exactly one slash between them."""
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return prefix + key


def sanitize_metadata_value(value: str) -> str:
    """Replace every character not allowed in a header value with ``?``."""
    return _NON_PRINTABLE.sub("?", value)