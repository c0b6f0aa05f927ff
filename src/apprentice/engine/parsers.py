"""Decoders for the Parse command."""

from __future__ import annotations

import json
import tomllib
import xml.etree.ElementTree as ET

import yaml

from apprentice.errors import ParseError


def parse_content(content: str, format_name: str) -> object:
    """Decode ``content`` as ``format_name`` into JSON-compatible data."""
    try:
        return _decode(content, format_name)
    except RecursionError as exc:
        raise ParseError("content is nested too deeply", format_name=format_name) from exc


def _decode(content: str, format_name: str) -> object:
    if format_name == "json":
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ParseError(exc.msg, format_name="json", line=exc.lineno, column=exc.colno) from exc
    if format_name == "yaml":
        try:
            return _jsonable(yaml.safe_load(content))
        except yaml.MarkedYAMLError as exc:
            mark = exc.problem_mark
            raise ParseError(
                str(exc.problem or exc),
                format_name="yaml",
                line=mark.line + 1 if mark is not None else None,
                column=mark.column + 1 if mark is not None else None,
            ) from exc
        except yaml.YAMLError as exc:
            raise ParseError(str(exc), format_name="yaml") from exc
    if format_name == "toml":
        try:
            return _jsonable(tomllib.loads(content))
        except tomllib.TOMLDecodeError as exc:
            raise ParseError(
                str(exc),
                format_name="toml",
                line=getattr(exc, "lineno", None),
                column=getattr(exc, "colno", None),
            ) from exc
    if format_name == "xml":
        try:
            root = ET.fromstring(content)
        except ET.ParseError as exc:
            line, column = exc.position
            raise ParseError(str(exc), format_name="xml", line=line, column=column) from exc
        return _element_to_dict(root)
    raise ParseError("unsupported format", format_name=format_name)


def _element_to_dict(element: ET.Element) -> dict[str, object]:
    text = (element.text or "").strip()
    return {
        "tag": element.tag,
        "attributes": dict(element.attrib),
        "text": text or None,
        "children": [_element_to_dict(child) for child in element],
    }


def _jsonable(value: object) -> object:
    """Convert dates and other scalars YAML/TOML produce into JSON-safe values."""
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
