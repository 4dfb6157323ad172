"""Description of an upload and its JSON representation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

_JSON_FIELDS = (
    ("ID", "id"),
    ("Size", "size"),
    ("SizeIsDeferred", "size_is_deferred"),
    ("Offset", "offset"),
    ("MetaData", "meta_data"),
    ("IsPartial", "is_partial"),
    ("IsFinal", "is_final"),
    ("PartialUploads", "partial_uploads"),
    ("Storage", "storage"),
)

_FIELD_BY_FOLDED_NAME = {name.lower(): attr for name, attr in _JSON_FIELDS}

_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _sorted_map(mapping: dict[str, str] | None) -> dict[str, str] | None:
    if mapping is None:
        return None
    return dict(sorted(mapping.items()))


def _check_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name} must be an integer, got {value!r}")
    return value


def _check_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"field {name} must be a boolean, got {value!r}")
    return value


def _check_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field {name} must be a string, got {value!r}")
    return value


def _check_str_map(name: str, value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError(f"field {name} must be an object, got {value!r}")
    return {key: _check_str(name, item) for key, item in value.items()}


def _check_str_list(name: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"field {name} must be an array, got {value!r}")
    return [_check_str(name, item) for item in value]


_CHECKS = {
    "id": _check_str,
    "size": _check_int,
    "size_is_deferred": _check_bool,
    "offset": _check_int,
    "meta_data": _check_str_map,
    "is_partial": _check_bool,
    "is_final": _check_bool,
    "partial_uploads": _check_str_list,
    "storage": _check_str_map,
}


@dataclass
class FileInfo:
    """State of an upload as stored in its info object."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] | None = None
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] | None = None
    storage: dict[str, str] | None = None

    def to_json(self) -> bytes:
        """Encode as compact JSON with a fixed field order and sorted maps."""
        document = {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": _sorted_map(self.meta_data),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": None if self.partial_uploads is None else list(self.partial_uploads),
            "Storage": _sorted_map(self.storage),
        }
        text = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        for char, escaped in _ESCAPES:
            text = text.replace(char, escaped)
        return text.encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> FileInfo:
        """Decode an info document; unknown keys are ignored, names match case-insensitively."""
        document = json.loads(data)
        if not isinstance(document, dict):
            raise ValueError("file info must be a JSON object")
        values: dict[str, Any] = {}
        for key, value in document.items():
            attr = _FIELD_BY_FOLDED_NAME.get(key.lower())
            if attr is None or value is None:
                continue
            values[attr] = _CHECKS[attr](key, value)
        return cls(**values)