"""Helpers for the loosely-typed configuration tree.

The host configuration is an arbitrary tree of mappings, sequences and
scalars. Every routine here dispatches explicitly over those variants
instead of assuming a shape.
"""

from typing import Any, Iterable, Mapping, Union

Scalar = Union[str, int, float, bool, None]
ConfigValue = Union[Scalar, list, dict]
ConfigTree = dict[str, Any]

__all__ = [
    "ConfigTree",
    "ConfigValue",
    "deep_copy",
    "deep_merge",
    "deep_remove_keys",
    "drop_undefined",
    "is_mapping",
    "pick",
]


def is_mapping(value: Any) -> bool:
    """True for dict-like nodes (the only nodes that carry keys)."""
    return isinstance(value, Mapping)


def deep_copy(value: ConfigValue) -> ConfigValue:
    """Copy a config tree so callers never share nested containers."""
    if is_mapping(value):
        return {str(k): deep_copy(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [deep_copy(item) for item in value]
    # Scalars are immutable
    return value


def deep_remove_keys(value: ConfigValue, keys: Iterable[str]) -> ConfigValue:
    """Return a copy of ``value`` with every key in ``keys`` removed at any depth.

    Sequences are walked too, so a forbidden key inside a list of option
    blocks is removed as well.
    """
    forbidden = frozenset(keys)
    return _remove(value, forbidden)


def _remove(value: ConfigValue, forbidden: frozenset) -> ConfigValue:
    if is_mapping(value):
        return {
            str(k): _remove(v, forbidden)
            for k, v in value.items()
            if k not in forbidden
        }
    if isinstance(value, (list, tuple)):
        return [_remove(item, forbidden) for item in value]
    return value


def deep_merge(target: Mapping, source: Mapping) -> ConfigTree:
    """Merge ``source`` onto a copy of ``target``; ``source`` wins at the leaves.

    Nested mappings present on both sides are merged recursively. Lists and
    scalars from ``source`` replace the target value wholesale. ``None`` in
    ``source`` means "not set" and never clobbers the target.
    """
    result = deep_copy(dict(target))
    for key, source_value in source.items():
        target_value = result.get(key)
        if is_mapping(source_value) and is_mapping(target_value):
            result[key] = deep_merge(target_value, source_value)
        elif source_value is not None:
            result[key] = deep_copy(source_value)
    return result


def drop_undefined(mapping: Mapping) -> ConfigTree:
    """Shallow copy without the keys whose value is ``None``."""
    return {k: v for k, v in mapping.items() if v is not None}


def pick(source: Mapping, fields: Iterable[str]) -> ConfigTree:
    """Copy the allow-listed ``fields`` that are defined in ``source``."""
    return {
        field: deep_copy(source[field])
        for field in fields
        if source.get(field) is not None
    }
