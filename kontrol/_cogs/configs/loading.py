"""
Loading of the operator settings from YAML files.

The file mirrors the structure of :class:`OperatorSettings`: the top-level
keys are the groups, the nested keys are the individual settings::

    watching:
      reconnect_backoff: 0.5
    queueing:
      max_retries: 5
    workers:
      count: 4

Only the mentioned settings are overridden, all others keep their values.
Unknown groups or settings are errors: typos must not pass silently.
"""
import dataclasses
import os
from collections.abc import Mapping
from typing import Any

import yaml

from kontrol._cogs.configs import configuration


class SettingsError(Exception):
    """ Raised when the settings file cannot be applied. """


def load_settings(
        path: str | os.PathLike[str],
        *,
        settings: configuration.OperatorSettings | None = None,
) -> configuration.OperatorSettings:
    settings = settings if settings is not None else configuration.OperatorSettings()
    with open(path, encoding='utf-8') as f:
        data = yaml.safe_load(f)
    apply_settings(settings, data or {})
    return settings


def apply_settings(
        settings: configuration.OperatorSettings,
        data: Mapping[str, Any],
) -> None:
    if not isinstance(data, Mapping):
        raise SettingsError(f"The settings must be a mapping, got {type(data).__name__}.")

    groups = {field.name for field in dataclasses.fields(settings)}
    for group_name, group_data in data.items():
        if group_name not in groups:
            raise SettingsError(f"Unknown settings group: {group_name!r}.")
        if not isinstance(group_data, Mapping):
            raise SettingsError(f"The settings group {group_name!r} must be a mapping.")

        group = getattr(settings, group_name)
        names = {field.name for field in dataclasses.fields(group)}
        for name, value in group_data.items():
            if name not in names:
                raise SettingsError(f"Unknown setting: {group_name}.{name}.")
            if isinstance(value, list):
                value = tuple(value)  # iterables of delays must be re-iterable & immutable.
            setattr(group, name, value)
