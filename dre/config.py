"""Configuration resolution.

A ConfigSet is assembled from ordered fragments. Resolution produces one flat,
read-only mapping per set and refuses any key that more than one fragment
defines. There is no last-writer-wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .api_models import ConfigSetSpec, InstanceTemplate
from .errors import DuplicateKeyError, MissingConfigKeyError, ValidationError


@dataclass(frozen=True)
class ResolvedConfig:
    name: str
    values: Mapping[str, str]
    sources: Mapping[str, str]  # key -> fragment that defined it


def resolve_config_set(name: str, spec: ConfigSetSpec) -> ResolvedConfig:
    values: dict[str, str] = {}
    sources: dict[str, str] = {}
    for frag in spec.fragments:
        for key, value in frag.data.items():
            if key in sources:
                raise DuplicateKeyError(name, key, sources[key], frag.name)
            values[key] = value
            sources[key] = frag.name
    return ResolvedConfig(name=name, values=MappingProxyType(values), sources=MappingProxyType(sources))


def resolve_all(
    config_sets: dict[str, ConfigSetSpec],
) -> tuple[dict[str, ResolvedConfig], dict[str, ValidationError]]:
    """Resolve every ConfigSet independently.

    Returns (resolved, errors); a set with a collision appears only in errors.
    """
    resolved: dict[str, ResolvedConfig] = {}
    errors: dict[str, ValidationError] = {}
    for name, spec in config_sets.items():
        try:
            resolved[name] = resolve_config_set(name, spec)
        except ValidationError as e:
            errors[name] = e
    return resolved, errors


def workload_environment(
    workload: str, template: InstanceTemplate, config: ResolvedConfig | None
) -> dict[str, str]:
    """Environment injected into each instance of a workload.

    The full resolved mapping is injected, plus each alias bound to its
    global key (e.g. PORT -> API_PORT). An alias may not shadow a different
    global key.
    """
    if config is None:
        if template.config_aliases:
            alias, key = next(iter(template.config_aliases.items()))
            raise MissingConfigKeyError(workload, alias, key)
        return {}

    env = dict(config.values)
    for alias, key in sorted(template.config_aliases.items()):
        if key not in config.values:
            raise MissingConfigKeyError(workload, alias, key)
        if alias in config.values and alias != key:
            raise DuplicateKeyError(config.name, alias, config.sources[alias], f"alias of {workload}")
        env[alias] = config.values[key]
    return env
