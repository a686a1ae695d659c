"""
Per-session policy overrides (safe subset).

A hunt session can be started with `settings_overrides` to tune anti-cheat and
tracking knobs for that session only (e.g. a sanctioned event on a train where
200 km/h is legitimate). This module:
- validates the override payload against a whitelist,
- deep-merges the safe subset onto current settings,
- re-validates with Pydantic to ensure types/ranges remain correct.

Ledger paths, forwarding URLs and log levels are process-wide and cannot be
overridden per session.
"""

from __future__ import annotations

from typing import Any, Mapping

from geohunt.config.settings import Settings

# A value of True allows any keys under that subtree; a nested dict only allows
# the listed keys, recursively.
ALLOWED_SETTINGS_OVERRIDES_TREE: dict[str, Any] = {
    "anticheat": True,
    "ingest": {
        "max_accuracy_m": True,
        "min_distance_m": True,
        "max_interval_seconds": True,
        "fresh_seconds": True,
        "last_known_good_max_age_seconds": True,
    },
    "proximity": {
        "hide_margin_m": True,
        "abandon_radius_m": True,
    },
    "sessions": {"idle_timeout_seconds": True},
}


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, override_value in override.items():
        if isinstance(override_value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(dict(merged[key]), override_value)
            continue
        merged[key] = override_value
    return merged


def _filter_overrides(
    overrides: Mapping[str, Any],
    *,
    allowed_tree: Mapping[str, Any],
    path: tuple[str, ...] = (),
) -> dict[str, Any]:
    filtered: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed_tree:
            dotted_path = ".".join((*path, key))
            raise ValueError(
                f"settings_overrides contains a disallowed key: '{dotted_path}'"
            )

        allowed = allowed_tree[key]
        if allowed is True:
            filtered[key] = value
            continue

        if not isinstance(value, Mapping):
            dotted_path = ".".join((*path, key))
            raise ValueError(
                f"settings_overrides key '{dotted_path}' must be a mapping"
            )

        filtered[key] = _filter_overrides(
            value, allowed_tree=allowed, path=(*path, key)
        )
    return filtered


def apply_settings_overrides(
    settings: Settings, overrides: Mapping[str, Any] | None
) -> Settings:
    """Return `settings` with a validated, whitelisted override subset applied.

    The input model is never mutated; a new `Settings` is returned unless
    `overrides` is empty, in which case the same object comes back.
    """
    if not overrides:
        return settings

    safe_overrides = _filter_overrides(
        overrides, allowed_tree=ALLOWED_SETTINGS_OVERRIDES_TREE
    )
    merged_payload = _deep_merge(settings.model_dump(mode="python"), safe_overrides)
    return Settings.model_validate(merged_payload)


def override_paths(overrides: Mapping[str, Any], prefix: str = "") -> list[str]:
    """Flatten an override payload to sorted `dotted.key=value` strings for audit logs."""
    out: list[str] = []
    for key, value in overrides.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            out.extend(override_paths(value, dotted))
        else:
            out.append(f"{dotted}={value!r}")
    return sorted(out)
