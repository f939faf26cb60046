"""
Naming helpers for REST resource paths and messages.
"""

from __future__ import annotations

import re

_IRREGULAR = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "datum": "data",
    "criterion": "criteria",
    "index": "indices",
    "status": "statuses",
    "address": "addresses",
}

_CAMEL_TAIL = re.compile(r"^(.+?)([A-Z][a-z]+)$")


def _match_case(template: str, word: str) -> str:
    return word.capitalize() if template[:1].isupper() else word


def pluralize(word: str) -> str:
    """
    Plural of an English noun, applied to the last word of a CamelCase name.

    Examples:
        >>> pluralize("Employee")
        'Employees'
        >>> pluralize("ProjectCategory")
        'ProjectCategories'
        >>> pluralize("Person")
        'People'
    """
    if not word:
        return word
    camel = _CAMEL_TAIL.match(word)
    if camel:
        prefix, tail = camel.groups()
        return prefix + pluralize(tail)

    lower = word.lower()
    if lower in _IRREGULAR:
        return _match_case(word, _IRREGULAR[lower])
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    if lower.endswith("y") and len(word) > 1 and lower[-2] not in "aeiou":
        return word[:-1] + "ies"
    if lower.endswith("fe"):
        return word[:-2] + "ves"
    return word + "s"


def to_api_plural(entity_name: str) -> str:
    """
    Lowercase plural used as the REST collection path.

    Examples:
        >>> to_api_plural("Employee")
        'employees'
    """
    return pluralize(entity_name).lower()
