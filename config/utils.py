"""Helpers for reading configuration sections regardless of the backing object."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


def _as_dict(candidate: Any) -> Optional[Dict[str, Any]]:
    if candidate is None:
        return None
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        candidate = to_dict()
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return None


def get_config_section(source: Any, section: str) -> Dict[str, Any]:
    """Return ``section`` from a Config, SectionProxy or plain dict as a dict."""
    if source is None:
        return {}

    if isinstance(source, Mapping):
        found = _as_dict(source.get(section))
        if found is not None:
            return found

    getter = getattr(source, 'get', None)
    if callable(getter):
        found = _as_dict(getter(section, None))
        if found is not None:
            return found

    return {}


def config_section(source: Any, section: str, defaults: Mapping[str, Any]) -> Dict[str, Any]:
    """Overlay a config section on top of component defaults.

    Keys present with a ``None`` value fall back to the default, so a YAML
    entry left blank behaves like a missing one.
    """
    merged = dict(defaults)
    for key, value in get_config_section(source, section).items():
        if value is not None:
            merged[key] = value
    return merged
