"""
``${NAME}`` expansion between secrets of one resolved environment.

Only ``${`` + an uppercase letter + uppercase letters, digits or underscores +
``}`` is a reference. Anything else (``$NAME``, ``${lower}``) is plain text.

Usage:
    from lockbox.references import resolve_references
    resolve_references({"HOST": "db", "URL": "pg://${HOST}/app"})
    # {"HOST": "db", "URL": "pg://db/app"}
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from lockbox.errors import CircularReferenceError, UnresolvedReferenceError

REFERENCE_PATTERN = re.compile(r"\$\{([A-Z][A-Z0-9_]*)\}")
MAX_REFERENCE_DEPTH = 10


def has_references(value: str) -> bool:
    return REFERENCE_PATTERN.search(value) is not None


def find_references(value: str) -> list[str]:
    """Referenced names in order of first appearance, without duplicates."""
    return list(dict.fromkeys(REFERENCE_PATTERN.findall(value)))


def resolve_value(key: str, secrets: Mapping[str, str]) -> str:
    """Fully expand one key's value.

    ``secrets`` may be any mapping; only the keys reached while expanding are
    read. Raises KeyError if ``key`` itself is absent.
    """
    return _resolve(key, secrets, [])


def resolve_references(secrets: Mapping[str, str]) -> dict[str, str]:
    """Expand every value. The result has exactly the input's keys."""
    return {key: resolve_value(key, secrets) for key in secrets}


def _resolve(key: str, secrets: Mapping[str, str], path: list[str]) -> str:
    if len(path) > MAX_REFERENCE_DEPTH:
        raise CircularReferenceError(key, [*path, key])
    if key in path:
        raise CircularReferenceError(key, [*path, key])

    value = secrets[key]
    if not has_references(value):
        return value

    path = [*path, key]

    def substitute(match: re.Match[str]) -> str:
        ref = match.group(1)
        if ref not in secrets:
            raise UnresolvedReferenceError(key, ref)
        return _resolve(ref, secrets, path)

    return REFERENCE_PATTERN.sub(substitute, value)
