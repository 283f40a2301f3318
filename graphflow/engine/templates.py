"""Template rendering for prompts, descriptions and transform nodes.

``{{ path }}`` tokens are replaced with values looked up in the run
context by dotted path (``prev.output``, ``<nodeId>.output``,
``input.items.0``). Substitution is a single pass: text produced by a
substitution is never scanned again. Unknown paths render as an empty
string and are reported to the caller through ``missing``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

_NOT_FOUND = object()


def resolve_path(context: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    """Resolve a dotted path against the context.

    Returns:
        (found, value). Numeric segments index into lists.
    """
    value: Any = context
    for segment in path.split("."):
        segment = segment.strip()
        if isinstance(value, dict):
            value = value.get(segment, _NOT_FOUND)
        elif isinstance(value, (list, tuple)) and segment.isdigit():
            index = int(segment)
            value = value[index] if index < len(value) else _NOT_FOUND
        else:
            value = _NOT_FOUND
        if value is _NOT_FOUND:
            return False, None
    return True, value


def stringify(value: Any) -> str:
    """Render a context value as template text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_template(
    template: str,
    context: Dict[str, Any],
    missing: Optional[List[str]] = None,
) -> str:
    """Substitute ``{{path}}`` tokens from the context.

    Args:
        template: Template text
        context: Render view (``input``, ``prev`` and node outputs by id)
        missing: Optional list that collects paths which did not resolve

    Returns:
        Rendered text. Never raises for unknown paths.
    """

    def _substitute(match: re.Match) -> str:
        path = match.group(1).strip()
        found, value = resolve_path(context, path)
        if not found:
            if missing is not None:
                missing.append(path)
            return ""
        return stringify(value)

    return TOKEN_PATTERN.sub(_substitute, template or "")
