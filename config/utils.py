"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, List

from .config_loader import SectionProxy


def _lookup(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    getter = getattr(source, 'get', None)
    if callable(getter):
        return getter(key)
    return getattr(source, key, None)


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dict section from Config, SectionProxy, or plain dict objects."""
    if source is None:
        return {}
    candidate = _lookup(source, section)
    if isinstance(candidate, SectionProxy):
        return dict(candidate.to_dict())
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}


def get_config_list(source: Any, key: str) -> List:
    if source is None:
        return []
    candidate = _lookup(source, key)
    if isinstance(candidate, (list, tuple)):
        return list(candidate)
    return []
