"""Field discovery over normalised payloads.

Used by consumers to offer selectable field paths (``"data.quote.price"``)
and tabular candidates (arrays of objects) without knowing the provider's
schema. Arrays are explored through their first element only.
"""

from __future__ import annotations

from typing import Any


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def extract_all_fields(obj: Any, prefix: str = "") -> list[str]:
    """Return dotted paths to every leaf, with ``[]`` marking array traversal."""
    fields: list[str] = []
    if obj is None:
        return fields

    if isinstance(obj, list):
        fields.append(prefix or "[]")
        sample = obj[0] if obj else None
        if not _is_primitive(sample):
            fields.extend(extract_all_fields(sample, f"{prefix}[]" if prefix else "[]"))
        return fields

    if isinstance(obj, dict):
        for key, value in obj.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            if _is_primitive(value):
                fields.append(path)
            elif isinstance(value, list):
                fields.append(path)
                sample = value[0] if value else None
                if not _is_primitive(sample):
                    fields.extend(extract_all_fields(sample, f"{path}[]"))
            else:
                fields.extend(extract_all_fields(value, path))

    return fields


def find_arrays(
    obj: Any, prefix: str = "", acc: dict[str, list] | None = None
) -> dict[str, list]:
    """Map each path holding an array of objects to that array."""
    if acc is None:
        acc = {}
    if not isinstance(obj, (dict, list)) or not obj:
        return acc

    if isinstance(obj, list):
        sample = obj[0]
        if isinstance(sample, (dict, list)):
            acc[prefix or "[]"] = obj
        if sample:
            find_arrays(sample, f"{prefix}[]" if prefix else "[]", acc)
        return acc

    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, list):
            sample = value[0] if value else None
            if isinstance(sample, (dict, list)):
                acc[path] = value
            if sample:
                find_arrays(sample, f"{path}[]", acc)
        elif isinstance(value, dict):
            find_arrays(value, path, acc)

    return acc
