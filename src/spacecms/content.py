"""Helpers for walking story content trees.

Story content is a mapping whose list-valued entries hold blocks::

    {"body": [{"_uid": "a1", "component": "hero", "title": "Hi",
               "columns": [{"_uid": "b2", "component": "card", ...}]}]}

A block is any mapping carrying both ``component`` and ``_uid``. Nested
blocks live in list-valued fields of their parent block ("slots").
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Set, Tuple

UID_KEY = "_uid"
COMPONENT_KEY = "component"

# Block keys that are structural rather than editable content.
RESERVED_KEYS = frozenset({UID_KEY, COMPONENT_KEY, "_editable"})


def generate_uid() -> str:
    return str(uuid.uuid4())


def is_block(value: Any) -> bool:
    return isinstance(value, Mapping) and COMPONENT_KEY in value and UID_KEY in value


def is_block_list(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0 and all(is_block(item) for item in value)


@dataclass
class Block:
    """Typed view over one block mapping. Nested blocks are not included."""

    component: str
    uid: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Block":
        return cls(component=data[COMPONENT_KEY], uid=data[UID_KEY], fields=copy.deepcopy(own_fields(data)))

    def text_leaves(self) -> Dict[str, str]:
        return text_leaves(self.fields)


def iter_blocks(value: Any, path: str = "") -> Iterator[Tuple[str, Mapping[str, Any]]]:
    """Yield ``(path, block)`` for every block in a content tree, depth-first."""
    if isinstance(value, Mapping):
        if is_block(value):
            yield path, value
        for key, child in value.items():
            if isinstance(child, (list, Mapping)):
                child_path = f"{path}.{key}" if path else str(key)
                yield from iter_blocks(child, child_path)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from iter_blocks(item, f"{path}.{index}" if path else str(index))


def index_by_uid(content: Optional[Mapping[str, Any]]) -> Dict[str, Mapping[str, Any]]:
    return {block[UID_KEY]: block for _, block in iter_blocks(content or {})}


def block_uids(content: Optional[Mapping[str, Any]]) -> Set[str]:
    return set(index_by_uid(content))


def own_fields(block: Mapping[str, Any]) -> Dict[str, Any]:
    """Block fields excluding reserved keys and nested block lists."""
    return {
        key: value
        for key, value in block.items()
        if key not in RESERVED_KEYS and not is_block_list(value)
    }


def text_leaves(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Translatable string leaves of a block's own fields."""
    return {
        key: value
        for key, value in fields.items()
        if isinstance(value, str) and key not in RESERVED_KEYS and not key.startswith("_")
    }


def regenerate_uids(value: Any) -> Any:
    """Deep copy of ``value`` with a fresh ``_uid`` on every block."""
    if isinstance(value, Mapping):
        copied = {key: regenerate_uids(child) for key, child in value.items()}
        if is_block(value):
            copied[UID_KEY] = generate_uid()
        return copied
    if isinstance(value, list):
        return [regenerate_uids(item) for item in value]
    return copy.deepcopy(value)


def count_words(text: str) -> int:
    return len(text.split())
