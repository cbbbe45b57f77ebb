"""
.env and JSON codecs for import and export.

.env parsing is line based: one ``KEY=value`` per line, blank lines
and ``#`` comments skipped, the value split at the first ``=`` and a single
pair of matching surrounding quotes removed. Double-quoted values have the
escapes written by ``format_dotenv`` undone, so an export imports back
unchanged.
"""

from __future__ import annotations

import json
from collections.abc import Mapping

FORMAT_ENV = "env"
FORMAT_JSON = "json"
FORMATS = (FORMAT_ENV, FORMAT_JSON)

_QUOTE_TRIGGERS = frozenset(" \"'\n\r\t$`")
_ESCAPES = {'"': '\\"', "\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_UNESCAPES = {'"': '"', "\\": "\\", "n": "\n", "r": "\r", "t": "\t"}


def needs_quoting(value: str) -> bool:
    # Surrounding whitespace would be lost to the per-line strip on import.
    return value != value.strip() or any(c in _QUOTE_TRIGGERS for c in value)


def escape_value(value: str) -> str:
    return "".join(_ESCAPES.get(c, c) for c in value)


def _unescape(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for c in chars:
        if c == "\\":
            nxt = next(chars, "")
            out.append(_UNESCAPES.get(nxt, "\\" + nxt))
        else:
            out.append(c)
    return "".join(out)


def parse_dotenv(text: str) -> dict[str, str]:
    result: dict[str, str] = {}
    # Split on \n only (CRLF loses its \r to strip). Other line breaks stay in values.
    for raw in text.split("\n"):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            quote, value = value[0], value[1:-1]
            if quote == '"':
                value = _unescape(value)
        result[key] = value
    return result


def parse_json(text: str) -> dict[str, str]:
    """Parse a flat JSON object of string values. Raises ValueError otherwise."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("JSON secrets must be an object of KEY: value pairs")
    for key, value in data.items():
        if not isinstance(value, str):
            raise ValueError(f"value for '{key}' must be a string")
    return data


def detect_format(text: str, filename: str | None = None) -> str:
    if filename and filename.endswith(".json"):
        return FORMAT_JSON
    try:
        json.loads(text)
    except ValueError:
        return FORMAT_ENV
    return FORMAT_JSON


def parse_secrets(text: str, fmt: str | None = None, filename: str | None = None) -> dict[str, str]:
    fmt = fmt or detect_format(text, filename)
    if fmt == FORMAT_JSON:
        return parse_json(text)
    if fmt == FORMAT_ENV:
        return parse_dotenv(text)
    raise ValueError(f"unknown format: {fmt} (use 'env' or 'json')")


def format_dotenv(secrets: Mapping[str, str]) -> str:
    lines = []
    for key in sorted(secrets):
        value = secrets[key]
        if needs_quoting(value):
            lines.append(f'{key}="{escape_value(value)}"')
        else:
            lines.append(f"{key}={value}")
    return "".join(line + "\n" for line in lines)


def format_json(secrets: Mapping[str, str]) -> str:
    return json.dumps(dict(secrets), indent=2, sort_keys=True) + "\n"


def format_secrets(secrets: Mapping[str, str], fmt: str = FORMAT_ENV) -> str:
    if fmt == FORMAT_JSON:
        return format_json(secrets)
    if fmt == FORMAT_ENV:
        return format_dotenv(secrets)
    raise ValueError(f"unknown format: {fmt} (use 'env' or 'json')")
