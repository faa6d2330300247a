"""
Template rendering for node content.

Placeholders use `{{name}}` (dot paths allowed: `{{beneficiary.name}}`).
Unknown placeholders render as an empty string so a missing variable
never leaks template syntax to the contact.
"""
from __future__ import annotations

import re
from typing import Any

from utils.conditions import get_nested_value

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render(template: str, ctx: dict[str, Any]) -> str:
    if not template:
        return ""

    def replacer(match: re.Match) -> str:
        val = get_nested_value(ctx, match.group(1))
        return "" if val is None else str(val)

    return _PLACEHOLDER.sub(replacer, template)


def placeholders(template: str) -> list[str]:
    """Names referenced by a template, in order of appearance."""
    return _PLACEHOLDER.findall(template or "")
