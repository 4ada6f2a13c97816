# expressions.py
"""
`${{ ... }}` substitution for action inputs and environment URLs.

Supported references:
  steps.<id>.outputs.<key>
  env.<NAME>
  run.id / run.ref / run.event / run.pipeline
Unknown references resolve to an empty string.
"""
from __future__ import annotations

import re
from typing import Any, Mapping

EXPR_RE = re.compile(r"\$\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def lookup(path: str, scope: Mapping[str, Any]) -> str:
    node: Any = scope
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return ""
        node = node[part]
    return "" if node is None else str(node)


def resolve(value: Any, scope: Mapping[str, Any]) -> Any:
    """Substitute expressions in strings; other values pass through."""
    if not isinstance(value, str) or "${{" not in value:
        return value
    return EXPR_RE.sub(lambda m: lookup(m.group(1), scope), value)
