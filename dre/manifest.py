"""Parsing of desired-state documents.

Both loaders refuse a mapping that repeats a key instead of keeping the
last value, so a fragment cannot quietly redefine PORT or DATABASE_HOST.
"""
from __future__ import annotations

import json
from collections.abc import Hashable
from typing import Any

import yaml

from .errors import DuplicateFieldError


class UniqueKeyLoader(yaml.SafeLoader):
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue  # SafeLoader reports unhashable keys itself
            if key in seen:
                raise DuplicateFieldError(str(key), f"line {key_node.start_mark.line + 1}")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _unique_pairs(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise DuplicateFieldError(key)
        out[key] = value
    return out


def load_json(text: str | bytes) -> Any:
    return json.loads(text, object_pairs_hook=_unique_pairs)


def load_yaml_documents(text: str) -> list[Any]:
    """Every non-empty document of a YAML stream; a list document is flattened."""
    docs: list[Any] = []
    for d in yaml.load_all(text, Loader=UniqueKeyLoader):
        if d is None:
            continue
        docs.extend(d if isinstance(d, list) else [d])
    return docs
