"""Tolerant wrapper around a recipe's ``code`` payload.

Workato owns the recipe schema, so nothing here assumes a particular shape:
the definition is either a parsed JSON tree or, when the payload does not
parse, the raw text with ``parse_error`` recorded.
"""
from __future__ import annotations

import json
from typing import Any, Iterator, Optional, Tuple


# UI/framework metadata in recipe code that says nothing about behaviour.
NOISE_KEYS = frozenset(
    {
        "uuid",
        "number",
        "as",
        "description",
        "visible_config_fields",
        "visible_config_fields_for_action",
        "toggleCfg",
    }
)


class RecipeDefinition:
    def __init__(self, tree: Any = None, raw: Optional[str] = None, parse_error: Optional[str] = None):
        self.tree = tree
        self.raw = raw
        self.parse_error = parse_error

    @classmethod
    def from_raw(cls, code: Any) -> "RecipeDefinition":
        """Build a definition from a JSON string, an already parsed tree or None."""
        if code is None or code == "":
            return cls(tree=None, raw=None)
        if isinstance(code, (bytes, bytearray)):
            code = code.decode("utf-8", errors="replace")
        if isinstance(code, str):
            try:
                return cls(tree=json.loads(code), raw=code)
            except ValueError as exc:
                return cls(tree=None, raw=code, parse_error=str(exc))
        return cls(tree=code, raw=None)

    def walk(self) -> Iterator[Tuple[str, Any]]:
        """Yield every ``(key, value)`` pair of every nested object, depth first."""
        stack = [self.tree]
        while stack:
            node = stack.pop()
            if isinstance(node, dict):
                items = list(node.items())
                for key, value in items:
                    yield str(key), value
                for _, value in reversed(items):
                    if isinstance(value, (dict, list)):
                        stack.append(value)
            elif isinstance(node, list):
                for item in reversed(node):
                    if isinstance(item, (dict, list)):
                        stack.append(item)

    def canonical(self) -> str:
        """Key-order independent encoding of the definition.

        Falls back to the raw text when the payload could not be parsed.
        """
        if self.parse_error is not None:
            return self.raw or ""
        if self.tree is None:
            return ""
        return json.dumps(self.tree, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def compact(self) -> str:
        """Definition without UI noise and nulls, as compact JSON for prompts."""
        if self.parse_error is not None:
            return self.raw or ""
        if self.tree is None:
            return "{}"
        return json.dumps(_strip_noise(self.tree), separators=(",", ":"), ensure_ascii=False)

    def text(self) -> str:
        """Best-effort textual form, used by pattern based fallbacks."""
        if self.raw is not None:
            return self.raw
        if self.tree is None:
            return ""
        return json.dumps(self.tree, ensure_ascii=False)


def _strip_noise(node: Any) -> Any:
    if isinstance(node, list):
        return [_strip_noise(item) for item in node]
    if isinstance(node, dict):
        return {
            key: _strip_noise(value)
            for key, value in node.items()
            if key not in NOISE_KEYS and value is not None
        }
    return node
