"""Variable binder: keeps an agreement's variables in step with its template.

Placeholders are ``{{Identifier}}`` tokens where the identifier is made of
ASCII letters, digits and underscores. Anything else between double braces
is reported by ``malformed_placeholders`` and never becomes a variable.
"""

import html
import re
from typing import Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")
BRACED_TOKEN_PATTERN = re.compile(r"\{\{([^{}]*)\}\}")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

MISSING_VALUE_MARKER = "[MISSING: {name}]"


def extract(body: str) -> set[str]:
    """Return the set of placeholder identifiers referenced in *body*."""
    if not body:
        return set()
    return set(PLACEHOLDER_PATTERN.findall(body))


def is_valid_identifier(name: str) -> bool:
    return bool(name) and IDENTIFIER_PATTERN.match(name) is not None


def malformed_placeholders(body: str) -> list[str]:
    """Return ``{{...}}`` tokens in *body* whose inner text is not a valid identifier."""
    if not body:
        return []
    return sorted({
        match.group(0)
        for match in BRACED_TOKEN_PATTERN.finditer(body)
        if not is_valid_identifier(match.group(1))
    })


def invalid_identifiers(variables: Mapping[str, str]) -> list[str]:
    """Return variable keys that could never be referenced by a placeholder."""
    return sorted(key for key in variables if not is_valid_identifier(key))


def reconcile(body: str, variables: Mapping[str, str]) -> dict[str, str]:
    """Add an empty entry for every placeholder in *body* missing from *variables*.

    Existing values are kept. Keys no longer referenced by the body are kept
    too, so a value survives a placeholder being removed and re-added.
    """
    reconciled = dict(variables)
    for name in sorted(extract(body)):
        reconciled.setdefault(name, "")
    return reconciled


def missing_marker(name: str) -> str:
    return MISSING_VALUE_MARKER.format(name=name)


def _is_blank(value) -> bool:
    return value is None or str(value) == ""


def render(body: str, variables: Mapping[str, str]) -> str:
    """Substitute every placeholder with its value.

    Template bodies are HTML, so values are escaped and always read as text.
    Absent or empty values render as a visible missing marker. Never raises.
    """
    if not body:
        return ""
    values = variables or {}

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        value = values.get(name)
        if _is_blank(value):
            return missing_marker(name)
        return html.escape(str(value), quote=False)

    return PLACEHOLDER_PATTERN.sub(_substitute, body)


def unfilled(body: str, variables: Mapping[str, str]) -> list[str]:
    """Placeholders in *body* that would render as missing."""
    values = variables or {}
    return sorted(name for name in extract(body) if _is_blank(values.get(name)))

