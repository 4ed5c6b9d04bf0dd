"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def _as_dict(candidate: Any) -> Dict:
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    return dict(candidate)


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or plain dict objects.

    Dotted names (``strategies.pump``) walk nested sections. Missing sections
    yield an empty dict.
    """
    if source is None:
        return {}

    node = source
    for part in section.split('.'):
        getter = getattr(node, 'get', None)
        if not callable(getter):
            return {}
        node = getter(part, None)
        if node is None:
            return {}

    if isinstance(node, Mapping):
        return _as_dict(node)
    return {}
