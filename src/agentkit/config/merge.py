"""Layering of agentkit config sources.

System, user and project ``config.yaml`` files and the environment overlay
are each parsed to a plain dict and folded together here before the result
is turned into a ``Config``.
"""

from __future__ import annotations

from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay one config layer on another.

    Sections such as ``server`` or ``session.approval`` merge key by key, so
    a project file can change ``server.port`` without restating the host.
    Lists (``agent.allowed_tools``, approval phrases) replace the lower
    layer's list. A key left empty in YAML (None) keeps the lower value.
    """
    result = base.copy()

    for key, value in override.items():
        if value is None:
            continue

        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value

    return result


def merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Fold layers lowest priority first; empty layers are skipped."""
    result: dict[str, Any] = {}
    for layer in layers:
        if layer:
            result = deep_merge(result, layer)
    return result
